"""
Settlement service: closing debts.

Closing a debt performs these writes in one store transaction:
1. Mark the debt CLOSED (closed_at, closed_by, artifact id)
2. Add a settlement artifact expense: amount = 2 x debt,
   paid by the creditor, split between debtor and creditor
3. Move the cached balance of both users by the debt amount
4. Append a settlement audit record

The debt is read inside the transaction. If a concurrent writer
touches any of these documents first, the store aborts the whole
transaction and this service retries from the read, with
exponential backoff, a bounded number of times.

Closing an already-closed debt is a success that returns the
original artifact id. That is what makes retries safe.

A debt can only be closed while the expense feed still shows the
debtor owing at least its amount. Otherwise the settlement would
push the pair past zero, and the close fails with InvalidRequest.
"""

import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable

from roommate_ledger.config import Settings, get_settings
from roommate_ledger.exceptions import (
    InvalidRequest,
    Malformed,
    MalformedDocument,
    NotFound,
    PermissionDenied,
    TransientConflict,
)
from roommate_ledger.models.enums import DebtStatus
from roommate_ledger.models.paths import (
    ACTIONS,
    DEBTS,
    action_ref,
    balance_ref,
    debt_ref,
    expense_ref,
)
from roommate_ledger.models.store import DocumentStore, Transaction
from roommate_ledger.money import TOLERANCE, ZERO, is_settled, round_money
from roommate_ledger.schemas.apartment import MemberRemovalResponse
from roommate_ledger.schemas.ledger import ExpenseRecord
from roommate_ledger.schemas.settlement import (
    Debt,
    DebtCreate,
    SettleRequest,
    SettlementAuditRecord,
    SettlementResult,
)
from roommate_ledger.services.apartment_directory import ApartmentDirectory
from roommate_ledger.services.balance_engine import compute_balances
from roommate_ledger.services.ledger_service import LedgerService
from roommate_ledger.services.simplifier import simplify

logger = logging.getLogger(__name__)

SETTLEMENT_DESCRIPTION = "Debt settlement"


class SettlementService:

    def __init__(
        self,
        store: DocumentStore,
        is_member: Callable[[str, str], bool] | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.ledger_service = LedgerService(store)
        self.is_member = is_member or ApartmentDirectory(store).is_member
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock

    # --- Retry ---

    def _with_retry(self, operation: Callable[[], SettlementResult], label: str):
        """
        Run operation, retrying only on TransientConflict.

        Waits base * 2**n seconds between attempts. After the last
        attempt the conflict is re-raised with the attempt count.
        """
        max_attempts = max(1, self.settings.SETTLEMENT_MAX_ATTEMPTS)
        base = self.settings.SETTLEMENT_BACKOFF_BASE_SECONDS

        for attempt in range(1, max_attempts + 1):
            try:
                return operation()
            except TransientConflict as e:
                if attempt == max_attempts:
                    logger.error(
                        "%s: giving up after %d conflicting attempts", label, attempt
                    )
                    raise TransientConflict(
                        f"{label} failed after {attempt} attempts: {e}",
                        attempts=attempt,
                    ) from e
                delay = base * (2 ** (attempt - 1))
                logger.warning(
                    "%s: transaction conflict on attempt %d/%d, retrying in %.2fs",
                    label, attempt, max_attempts, delay,
                )
                self._sleep(delay)

    # --- Validation ---

    def _parse_debt(self, snapshot) -> Debt:
        try:
            return Debt.from_document(snapshot)
        except MalformedDocument as e:
            logger.error("Malformed debt document: %s", e)
            raise Malformed(str(e)) from e

    def _check_integrity(self, debt: Debt) -> None:
        problems = []
        if not debt.from_user_id:
            problems.append("missing debtor")
        if not debt.to_user_id:
            problems.append("missing creditor")
        if not debt.amount.is_finite() or debt.amount <= 0:
            problems.append(f"invalid amount {debt.amount}")
        if problems:
            logger.error("Debt %s failed integrity checks: %s", debt.id, ", ".join(problems))
            raise Malformed(f"Debt {debt.id} is malformed: {', '.join(problems)}")

    def _require_member(self, apartment_id: str, user_id: str) -> None:
        if not self.is_member(apartment_id, user_id):
            raise PermissionDenied(
                f"User {user_id} is not a member of apartment {apartment_id}"
            )

    # --- Transaction bodies ---

    def _read_projection(self, tx: Transaction, apartment_id: str, user_id: str) -> Decimal:
        snapshot = tx.get(balance_ref(apartment_id, user_id))
        if snapshot is None:
            return ZERO
        try:
            return round_money(Decimal(str(snapshot.data.get("balance", "0"))))
        except InvalidOperation as e:
            logger.error("Unreadable balance projection %s", snapshot.ref.path)
            raise Malformed(f"Balance projection {snapshot.ref.path} is malformed") from e

    def _write_settlement(
        self,
        tx: Transaction,
        debt: Debt,
        actor_id: str,
        original_amount: Decimal | None = None,
    ) -> SettlementResult:
        """
        Write the settlement for an open debt.

        The ledger must still show the debtor owing at least the
        debt amount. Both projections are read before the expense
        feed, so a settlement committed after the feed read always
        conflicts with this one's projection writes. The feed is
        read after the debt write is flushed, so a debt closed
        elsewhere since it was read aborts as a conflict instead.

        original_amount defaults to what the ledger showed as owed.
        """
        closed_at = self._clock()
        artifact_id = uuid.uuid4().hex
        amount = round_money(debt.amount)

        debtor_balance = self._read_projection(tx, debt.apartment_id, debt.from_user_id)
        creditor_balance = self._read_projection(tx, debt.apartment_id, debt.to_user_id)

        tx.update(debt_ref(debt.id), {
            "status": DebtStatus.CLOSED.value,
            "closed_at": closed_at.isoformat(),
            "closed_by": actor_id,
            "settlement_artifact_id": artifact_id,
        })

        artifact = ExpenseRecord(
            id=artifact_id,
            apartment_id=debt.apartment_id,
            amount=round_money(amount * 2),
            payer_id=debt.to_user_id,
            participant_ids=[debt.from_user_id, debt.to_user_id],
            created_at=closed_at,
            description=debt.description or SETTLEMENT_DESCRIPTION,
            is_settlement_artifact=True,
        )
        # Flushes the debt update too
        tx.create(expense_ref(debt.apartment_id, artifact_id), artifact.to_document())

        outstanding = self._outstanding(
            debt.apartment_id, debt.from_user_id, debt.to_user_id
        )
        self._check_ceiling(amount, outstanding)
        if original_amount is None:
            original_amount = outstanding

        for user_id, new_balance in (
            (debt.from_user_id, debtor_balance + amount),
            (debt.to_user_id, creditor_balance - amount),
        ):
            tx.set(balance_ref(debt.apartment_id, user_id), {
                "user_id": user_id,
                "balance": str(round_money(new_balance)),
                "updated_at": closed_at.isoformat(),
            })

        audit = SettlementAuditRecord(
            id=uuid.uuid4().hex,
            apartment_id=debt.apartment_id,
            debt_id=debt.id,
            settlement_artifact_id=artifact_id,
            actor_id=actor_id,
            debtor_id=debt.from_user_id,
            creditor_id=debt.to_user_id,
            original_amount=round_money(original_amount),
            settlement_amount=amount,
            created_at=closed_at,
        )
        tx.create(action_ref(audit.id), audit.to_document())

        return SettlementResult(
            debt_id=debt.id,
            settlement_artifact_id=artifact_id,
            closed_at=closed_at,
        )

    def _close_in_transaction(
        self, tx: Transaction, debt_id: str, actor_id: str
    ) -> SettlementResult:
        snapshot = tx.get(debt_ref(debt_id))
        if snapshot is None:
            raise NotFound(f"Debt {debt_id} not found")

        debt = self._parse_debt(snapshot)
        self._require_member(debt.apartment_id, actor_id)

        if debt.status == DebtStatus.CLOSED:
            if not debt.settlement_artifact_id or debt.closed_at is None:
                logger.error("Debt %s is closed but has no settlement record", debt.id)
                raise Malformed(f"Debt {debt.id} is closed without a settlement artifact")
            logger.info("Debt %s already closed, returning prior settlement", debt.id)
            return SettlementResult(
                debt_id=debt.id,
                settlement_artifact_id=debt.settlement_artifact_id,
                closed_at=debt.closed_at,
                already_closed=True,
            )

        self._check_integrity(debt)
        return self._write_settlement(tx, debt, actor_id, original_amount=debt.amount)

    # --- Public operations ---

    def close_debt(self, debt_id: str, actor_id: str) -> SettlementResult:
        """
        Close an open debt atomically.

        Raises NotFound, PermissionDenied, Malformed or InvalidRequest
        immediately.
        Raises TransientConflict only once every retry has conflicted.
        """
        result = self._with_retry(
            lambda: self.store.run_transaction(
                lambda tx: self._close_in_transaction(tx, debt_id, actor_id)
            ),
            f"close debt {debt_id}",
        )
        if not result.already_closed:
            logger.info(
                "Closed debt %s by %s, settlement artifact %s",
                debt_id, actor_id, result.settlement_artifact_id,
            )
        return result

    def create_debt(self, apartment_id: str, request: DebtCreate) -> Debt:
        """
        Record that one member owes another.

        A debt names part of what the expense feed already shows
        as owed; it never adds to balances. Closing it is what
        moves money, and the close checks the amount again.
        """
        if request.from_user_id == request.to_user_id:
            raise InvalidRequest("A user cannot owe themselves")
        self._require_member(apartment_id, request.actor_id)
        for user_id in (request.from_user_id, request.to_user_id):
            if not self.is_member(apartment_id, user_id):
                raise InvalidRequest(
                    f"User {user_id} is not a member of apartment {apartment_id}"
                )
        self._check_ceiling(
            round_money(request.amount),
            self._outstanding(apartment_id, request.from_user_id, request.to_user_id),
        )

        debt = Debt(
            id=uuid.uuid4().hex,
            apartment_id=apartment_id,
            from_user_id=request.from_user_id,
            to_user_id=request.to_user_id,
            amount=round_money(request.amount),
            description=request.description,
            created_at=self._clock(),
        )
        self.store.run_transaction(
            lambda tx: tx.create(debt_ref(debt.id), debt.to_document())
        )
        logger.info(
            "Created debt %s: %s owes %s %s",
            debt.id, debt.from_user_id, debt.to_user_id, debt.amount,
        )
        return debt

    def _outstanding(self, apartment_id: str, from_user_id: str, to_user_id: str) -> Decimal:
        """What from_user currently owes to_user, netted or simplified."""
        expenses = self.ledger_service.list_expenses(apartment_id)
        netted = compute_balances(expenses)
        simplified = simplify(netted)
        amounts = [
            balances[from_user_id].owes.get(to_user_id, ZERO)
            for balances in (netted, simplified)
            if from_user_id in balances
        ]
        return max(amounts, default=ZERO)

    def _check_ceiling(self, amount: Decimal, outstanding: Decimal) -> None:
        if amount > outstanding + TOLERANCE:
            raise InvalidRequest(
                f"Settlement amount {amount} exceeds outstanding debt {outstanding}"
            )

    def settle(self, apartment_id: str, request: SettleRequest) -> SettlementResult:
        """
        Settle up between two members in one step.

        A debt for the amount is created and closed in the same
        transaction. The amount cannot exceed what the debtor
        currently owes the creditor.
        """
        if request.from_user_id == request.to_user_id:
            raise InvalidRequest("A user cannot settle with themselves")
        self._require_member(apartment_id, request.actor_id)
        for user_id in (request.from_user_id, request.to_user_id):
            if not self.is_member(apartment_id, user_id):
                raise InvalidRequest(
                    f"User {user_id} is not a member of apartment {apartment_id}"
                )

        amount = round_money(request.amount)

        # Same debt id on every attempt so a retry finds the earlier commit
        debt = Debt(
            id=uuid.uuid4().hex,
            apartment_id=apartment_id,
            from_user_id=request.from_user_id,
            to_user_id=request.to_user_id,
            amount=amount,
            description=request.description,
            created_at=self._clock(),
        )

        def body(tx: Transaction) -> SettlementResult:
            if tx.get(debt_ref(debt.id)) is not None:
                return self._close_in_transaction(tx, debt.id, request.actor_id)
            tx.create(debt_ref(debt.id), debt.to_document())
            return self._write_settlement(tx, debt, request.actor_id)

        result = self._with_retry(
            lambda: self.store.run_transaction(body),
            f"settle {request.from_user_id}->{request.to_user_id}",
        )
        logger.info(
            "Settled %s from %s to %s (debt %s, artifact %s)",
            amount, request.from_user_id, request.to_user_id,
            result.debt_id, result.settlement_artifact_id,
        )
        return result

    # --- Queries ---

    def list_debts(
        self, apartment_id: str, status: DebtStatus | None = None
    ) -> list[Debt]:
        debts = []
        for snapshot in self.store.list_collection(DEBTS):
            if snapshot.data.get("apartment_id") != apartment_id:
                continue
            try:
                debt = Debt.from_document(snapshot)
            except MalformedDocument as e:
                logger.warning("Skipping malformed debt: %s", e)
                continue
            if status is None or debt.status == status:
                debts.append(debt)
        return debts

    def list_actions(self, apartment_id: str) -> list[SettlementAuditRecord]:
        """Settlement audit trail for an apartment, newest first."""
        records = []
        for snapshot in self.store.list_collection(ACTIONS):
            if snapshot.data.get("apartment_id") != apartment_id:
                continue
            try:
                records.append(SettlementAuditRecord.from_document(snapshot))
            except MalformedDocument as e:
                logger.warning("Skipping malformed action: %s", e)
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    def can_remove_member(self, apartment_id: str, user_id: str) -> MemberRemovalResponse:
        """
        A member can leave only when they have no open debts and
        their net balance is within one cent of zero.
        """
        has_open_debts = any(
            user_id in (debt.from_user_id, debt.to_user_id)
            for debt in self.list_debts(apartment_id, DebtStatus.OPEN)
        )
        net = self.ledger_service.get_net_balance(apartment_id, user_id)
        return MemberRemovalResponse(
            user_id=user_id,
            net_balance=net,
            has_open_debts=has_open_debts,
            can_be_removed=not has_open_debts and is_settled(net),
        )
