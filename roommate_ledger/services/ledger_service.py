"""
Ledger service: the expense feed and balance views.

Balances are never stored as a source of truth. They are
always re-derived from the apartment's expense records. The
cached projection under balances/ is a convenience copy that
can be thrown away and rebuilt with recompute_projection().
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation

from roommate_ledger.exceptions import MalformedDocument, NotFound
from roommate_ledger.models.paths import (
    apartment_ref,
    balance_ref,
    balances_collection,
    expense_ref,
    expenses_collection,
)
from roommate_ledger.models.store import DocumentStore
from roommate_ledger.money import ZERO, round_money
from roommate_ledger.schemas.ledger import (
    BalanceEntry,
    ExpenseCreate,
    ExpenseRecord,
    MonthlySummary,
)
from roommate_ledger.services.balance_engine import (
    compute_balances,
    compute_raw_balances,
    monthly_summary,
)
from roommate_ledger.services.simplifier import simplify

logger = logging.getLogger(__name__)


def _sorted(balances: dict[str, BalanceEntry]) -> list[BalanceEntry]:
    return [balances[user_id] for user_id in sorted(balances)]


class LedgerService:
    """
    Read side of the ledger plus the expense-entry write.

    Takes the document store as a constructor argument so the
    caller decides which database it talks to.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def _require_apartment(self, apartment_id: str) -> None:
        if self.store.get(apartment_ref(apartment_id)) is None:
            raise NotFound(f"Apartment {apartment_id} not found")

    def list_expenses(self, apartment_id: str) -> list[ExpenseRecord]:
        """
        Return every expense record for an apartment.

        Documents that do not parse are left out and logged.
        One corrupt record must not hide the whole ledger.
        """
        records = []
        for snapshot in self.store.list_collection(expenses_collection(apartment_id)):
            try:
                records.append(ExpenseRecord.from_document(snapshot))
            except MalformedDocument as e:
                logger.warning("Quarantined expense document: %s", e)
        return records

    def add_expense(self, apartment_id: str, request: ExpenseCreate) -> ExpenseRecord:
        """Record a new shared expense."""
        self._require_apartment(apartment_id)

        record = ExpenseRecord(
            id=uuid.uuid4().hex,
            apartment_id=apartment_id,
            amount=round_money(request.amount),
            payer_id=request.payer_id,
            participant_ids=request.participant_ids,
            created_at=datetime.utcnow(),
            description=request.description,
        )
        ref = expense_ref(apartment_id, record.id)
        self.store.run_transaction(lambda tx: tx.create(ref, record.to_document()))
        logger.info(
            "Added expense %s in apartment %s: %s paid by %s",
            record.id, apartment_id, record.amount, record.payer_id,
        )
        return record

    def get_balances(self, apartment_id: str, raw: bool = False) -> list[BalanceEntry]:
        """
        Balances for every user in the apartment's ledger.

        raw=True keeps opposing debts itemized per payer.
        """
        expenses = self.list_expenses(apartment_id)
        if raw:
            return _sorted(compute_raw_balances(expenses))
        return _sorted(compute_balances(expenses))

    def get_simplified_balances(self, apartment_id: str) -> list[BalanceEntry]:
        expenses = self.list_expenses(apartment_id)
        return _sorted(simplify(compute_raw_balances(expenses)))

    def get_net_balance(self, apartment_id: str, user_id: str) -> Decimal:
        balances = compute_balances(self.list_expenses(apartment_id))
        entry = balances.get(user_id)
        return entry.net_balance if entry else ZERO

    def get_monthly_summary(
        self,
        apartment_id: str,
        year: int,
        month: int,
        user_id: str | None = None,
    ) -> MonthlySummary:
        return monthly_summary(self.list_expenses(apartment_id), year, month, user_id)

    # --- Cached projection ---

    def get_projection(self, apartment_id: str) -> dict[str, Decimal]:
        """Read the cached per-user net balances."""
        projection = {}
        for snapshot in self.store.list_collection(balances_collection(apartment_id)):
            try:
                projection[snapshot.ref.id] = round_money(
                    Decimal(str(snapshot.data.get("balance", "0")))
                )
            except InvalidOperation:
                logger.warning("Unreadable balance projection %s", snapshot.ref.path)
        return projection

    def recompute_projection(self, apartment_id: str) -> dict[str, Decimal]:
        """
        Rebuild the cached projection from the expense feed.

        Users who still have a cached row but no ledger activity
        are reset to zero.
        """
        self._require_apartment(apartment_id)
        balances = compute_balances(self.list_expenses(apartment_id))
        existing = {
            snapshot.ref.id
            for snapshot in self.store.list_collection(balances_collection(apartment_id))
        }
        nets = {user_id: entry.net_balance for user_id, entry in balances.items()}
        for user_id in existing - set(nets):
            nets[user_id] = ZERO

        now = datetime.utcnow().isoformat()

        def write(tx):
            for user_id, net in nets.items():
                tx.set(balance_ref(apartment_id, user_id), {
                    "user_id": user_id,
                    "balance": str(net),
                    "updated_at": now,
                })

        self.store.run_transaction(write)
        logger.info(
            "Recomputed balance projection for apartment %s (%d users)",
            apartment_id, len(nets),
        )
        return nets
