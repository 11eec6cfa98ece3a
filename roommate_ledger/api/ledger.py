"""
Ledger API endpoints.

The API layer is thin: it handles HTTP concerns and delegates
all computation to the LedgerService.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from roommate_ledger.api.errors import http_error
from roommate_ledger.exceptions import LedgerError
from roommate_ledger.models.base import get_store
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.schemas.ledger import (
    BalancesResponse,
    ExpenseCreate,
    ExpenseRecord,
    MonthlySummary,
)
from roommate_ledger.services.ledger_service import LedgerService

router = APIRouter(prefix="/apartments/{apartment_id}", tags=["Ledger"])


@router.post("/expenses", response_model=ExpenseRecord, status_code=201)
def add_expense(
    apartment_id: str,
    request: ExpenseCreate,
    store: DocumentStore = Depends(get_store),
):
    service = LedgerService(store)
    try:
        return service.add_expense(apartment_id, request)
    except LedgerError as e:
        raise http_error(e)


@router.get("/expenses", response_model=list[ExpenseRecord])
def list_expenses(
    apartment_id: str,
    include_settlements: bool = False,
    store: DocumentStore = Depends(get_store),
):
    """
    List the apartment's expenses.

    Settlement artifacts are hidden unless include_settlements is set.
    """
    expenses = LedgerService(store).list_expenses(apartment_id)
    if include_settlements:
        return expenses
    return [e for e in expenses if not e.is_settlement_artifact]


@router.get("/expenses/monthly", response_model=MonthlySummary)
def monthly_expenses(
    apartment_id: str,
    year: int = Query(ge=1970, le=9999),
    month: int = Query(ge=1, le=12),
    user_id: str | None = None,
    store: DocumentStore = Depends(get_store),
):
    return LedgerService(store).get_monthly_summary(apartment_id, year, month, user_id)


@router.get("/balances", response_model=BalancesResponse)
def get_balances(
    apartment_id: str,
    raw: bool = False,
    store: DocumentStore = Depends(get_store),
):
    """Pairwise balances; raw=true keeps debts itemized per payer."""
    balances = LedgerService(store).get_balances(apartment_id, raw=raw)
    return BalancesResponse(
        apartment_id=apartment_id, simplified=False, balances=balances
    )


@router.get("/balances/simplified", response_model=BalancesResponse)
def get_simplified_balances(
    apartment_id: str,
    store: DocumentStore = Depends(get_store),
):
    """Balances collapsed into the smallest greedy transfer plan."""
    balances = LedgerService(store).get_simplified_balances(apartment_id)
    return BalancesResponse(
        apartment_id=apartment_id, simplified=True, balances=balances
    )


@router.post("/balances/recompute", response_model=dict[str, Decimal])
def recompute_balances(
    apartment_id: str,
    store: DocumentStore = Depends(get_store),
):
    """Discard and rebuild the cached balance projection."""
    try:
        return LedgerService(store).recompute_projection(apartment_id)
    except LedgerError as e:
        raise http_error(e)
