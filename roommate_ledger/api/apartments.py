"""
Apartment API endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException

from roommate_ledger.api.errors import http_error
from roommate_ledger.exceptions import LedgerError
from roommate_ledger.models.base import get_store
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.schemas.apartment import (
    ApartmentCreate,
    ApartmentResponse,
    MemberRemovalResponse,
)
from roommate_ledger.services.apartment_directory import ApartmentDirectory
from roommate_ledger.services.settlement_service import SettlementService

router = APIRouter(prefix="/apartments", tags=["Apartments"])


@router.post("", response_model=ApartmentResponse, status_code=201)
def register_apartment(
    request: ApartmentCreate,
    store: DocumentStore = Depends(get_store),
):
    """Create an apartment or replace its member list."""
    return ApartmentDirectory(store).register(request)


@router.get("/{apartment_id}", response_model=ApartmentResponse)
def get_apartment(
    apartment_id: str,
    store: DocumentStore = Depends(get_store),
):
    try:
        return ApartmentDirectory(store).get(apartment_id)
    except LedgerError as e:
        raise http_error(e)


@router.get(
    "/{apartment_id}/members/{user_id}/removable",
    response_model=MemberRemovalResponse,
)
def check_member_removal(
    apartment_id: str,
    user_id: str,
    store: DocumentStore = Depends(get_store),
):
    """
    Report whether a member can leave the apartment.

    Requires no open debts and a settled net balance.
    """
    directory = ApartmentDirectory(store)
    if not directory.is_member(apartment_id, user_id):
        raise HTTPException(
            status_code=404,
            detail=f"User {user_id} is not a member of apartment {apartment_id}",
        )
    return SettlementService(store, is_member=directory.is_member).can_remove_member(
        apartment_id, user_id
    )
