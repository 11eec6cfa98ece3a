"""
Pydantic schemas for expenses and balances.

Stored documents are free-form JSON. These models are the
boundary: a document either parses into a typed record or is
rejected as MalformedDocument. Nothing downstream does
arithmetic on raw document fields.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, ValidationError, field_validator

from roommate_ledger.exceptions import MalformedDocument
from roommate_ledger.models.store import DocumentSnapshot
from roommate_ledger.money import ZERO, round_money


# --- Stored records ---

class ExpenseRecord(BaseModel):
    """
    An immutable expense fact.

    Settlement artifacts exist only to cancel a closed debt.
    They count in balance math but never in spending totals.
    """
    id: str
    apartment_id: str | None = None
    amount: Decimal
    payer_id: str
    participant_ids: list[str]
    created_at: datetime = Field(default_factory=datetime.utcnow)
    description: str | None = None
    is_settlement_artifact: bool = False

    model_config = {"frozen": True}

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot) -> "ExpenseRecord":
        try:
            return cls.model_validate({**snapshot.data, "id": snapshot.ref.id})
        except ValidationError as e:
            raise MalformedDocument(snapshot.ref.path, str(e)) from e

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


class SettlementPayment(BaseModel):
    """A recorded payment from one user to another outside any debt."""
    from_user_id: str
    to_user_id: str
    amount: Decimal


# --- Derived views ---

class BalanceEntry(BaseModel):
    """
    One user's position in the ledger.

    owes[x]: what this user owes x. owed[x]: what x owes this user.
    net_balance = sum(owed) - sum(owes); positive means the user
    is owed money overall.
    """
    user_id: str
    owes: dict[str, Decimal] = Field(default_factory=dict)
    owed: dict[str, Decimal] = Field(default_factory=dict)
    net_balance: Decimal = ZERO

    def compute_net(self) -> Decimal:
        """sum(owed) - sum(owes), rounded to cents."""
        return round_money(
            sum(self.owed.values(), ZERO) - sum(self.owes.values(), ZERO)
        )


class Transfer(BaseModel):
    """A single directed payment in a simplified settlement plan."""
    from_user_id: str
    to_user_id: str
    amount: Decimal


class MonthlySummary(BaseModel):
    year: int
    month: int
    expenses: list[ExpenseRecord]
    total: Decimal
    personal_total: Decimal


# --- Request Schemas ---

class ExpenseCreate(BaseModel):
    """A new expense from the expense-entry flow."""
    amount: Decimal = Field(gt=0, decimal_places=2)
    payer_id: str = Field(min_length=1, max_length=128)
    participant_ids: list[str] = Field(min_length=1)
    description: str | None = Field(default=None, max_length=255)

    @field_validator("participant_ids")
    @classmethod
    def participants_must_be_named(cls, v: list[str]) -> list[str]:
        if any(not pid for pid in v):
            raise ValueError("participant ids must be non-empty")
        return list(dict.fromkeys(v))


# --- Response Schemas ---

class BalancesResponse(BaseModel):
    apartment_id: str
    simplified: bool
    balances: list[BalanceEntry]
