"""
Pydantic schemas for apartment membership.
"""

from decimal import Decimal

from pydantic import BaseModel, Field


class ApartmentCreate(BaseModel):
    id: str = Field(min_length=1, max_length=100)
    name: str = Field(min_length=1, max_length=100)
    members: list[str] = Field(min_length=1)


class ApartmentResponse(BaseModel):
    id: str
    name: str
    members: list[str]


class MemberRemovalResponse(BaseModel):
    user_id: str
    net_balance: Decimal
    has_open_debts: bool
    can_be_removed: bool
