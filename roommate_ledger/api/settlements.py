"""
Debt and settlement API endpoints.
"""

from fastapi import APIRouter, Depends

from roommate_ledger.api.errors import http_error
from roommate_ledger.exceptions import LedgerError
from roommate_ledger.models.base import get_store
from roommate_ledger.models.enums import DebtStatus
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.schemas.settlement import (
    CloseDebtRequest,
    Debt,
    DebtCreate,
    SettleRequest,
    SettlementAuditRecord,
    SettlementResult,
)
from roommate_ledger.services.settlement_service import SettlementService

router = APIRouter(tags=["Settlements"])


@router.post(
    "/apartments/{apartment_id}/debts",
    response_model=Debt,
    status_code=201,
)
def create_debt(
    apartment_id: str,
    request: DebtCreate,
    store: DocumentStore = Depends(get_store),
):
    try:
        return SettlementService(store).create_debt(apartment_id, request)
    except LedgerError as e:
        raise http_error(e)


@router.get("/apartments/{apartment_id}/debts", response_model=list[Debt])
def list_debts(
    apartment_id: str,
    status: DebtStatus | None = None,
    store: DocumentStore = Depends(get_store),
):
    return SettlementService(store).list_debts(apartment_id, status)


@router.post("/debts/{debt_id}/close", response_model=SettlementResult)
def close_debt(
    debt_id: str,
    request: CloseDebtRequest,
    store: DocumentStore = Depends(get_store),
):
    """
    Close a debt.

    Closing an already-closed debt returns the original result
    with already_closed set, so clients can retry safely.
    """
    try:
        return SettlementService(store).close_debt(debt_id, request.actor_id)
    except LedgerError as e:
        raise http_error(e)


@router.post(
    "/apartments/{apartment_id}/settlements",
    response_model=SettlementResult,
    status_code=201,
)
def settle(
    apartment_id: str,
    request: SettleRequest,
    store: DocumentStore = Depends(get_store),
):
    """Create and close a debt between two members in one step."""
    try:
        return SettlementService(store).settle(apartment_id, request)
    except LedgerError as e:
        raise http_error(e)


@router.get(
    "/apartments/{apartment_id}/actions",
    response_model=list[SettlementAuditRecord],
)
def list_actions(
    apartment_id: str,
    store: DocumentStore = Depends(get_store),
):
    return SettlementService(store).list_actions(apartment_id)
