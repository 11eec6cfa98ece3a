"""
Comprehensive tests for the SettlementService.

Tests cover:
- Closing a debt and the settlement artifact it writes
- Closing twice returns the original settlement
- NotFound, PermissionDenied and Malformed abort without writes
- Debts the expense feed no longer backs are rejected
- Cached balance projection deltas and the audit record
- Retry with backoff on transaction conflicts
- Closes and settlements racing each other
- Debt creation rules
- One-step settle up
- Member removal checks
"""

from decimal import Decimal

import pytest

from roommate_ledger.config import Settings
from roommate_ledger.exceptions import (
    InvalidRequest,
    Malformed,
    NotFound,
    PermissionDenied,
    TransientConflict,
)
from roommate_ledger.models.enums import DebtStatus
from roommate_ledger.models.paths import balance_ref, debt_ref, expenses_collection
from roommate_ledger.schemas.ledger import ExpenseCreate
from roommate_ledger.schemas.settlement import DebtCreate, SettleRequest
from roommate_ledger.services.ledger_service import LedgerService
from roommate_ledger.services.settlement_service import SettlementService


# --- Helpers to reduce repetition ---

def add_expense(store, amount, payer, participants):
    return LedgerService(store).add_expense("apt-1", ExpenseCreate(
        amount=Decimal(amount),
        payer_id=payer,
        participant_ids=participants,
    ))


def a_owes_b(store, amount="100"):
    """B pays for A and B, so A owes B half the amount."""
    return add_expense(store, amount, "B", ["A", "B"])


def create_debt(service, debtor, creditor, amount, actor=None):
    return service.create_debt("apt-1", DebtCreate(
        from_user_id=debtor,
        to_user_id=creditor,
        amount=Decimal(amount),
        actor_id=actor or debtor,
    ))


def settle_request(debtor, creditor, amount):
    return SettleRequest(
        from_user_id=debtor,
        to_user_id=creditor,
        amount=Decimal(amount),
        actor_id=debtor,
    )


def store_raw_debt(store, debt_id, **fields):
    """Write a debt document directly, bypassing validation."""
    data = {
        "apartment_id": "apt-1",
        "from_user_id": "A",
        "to_user_id": "B",
        "amount": "50.00",
        "status": "open",
    }
    data.update(fields)
    store.run_transaction(lambda tx: tx.create(debt_ref(debt_id), data))


def make_settings(max_attempts=3, base=0.5):
    settings = Settings()
    settings.SETTLEMENT_MAX_ATTEMPTS = max_attempts
    settings.SETTLEMENT_BACKOFF_BASE_SECONDS = base
    return settings


def net(store, user_id):
    return LedgerService(store).get_net_balance("apt-1", user_id)


def expense_count(store):
    return len(store.list_collection(expenses_collection("apt-1")))


class ConflictingStore:
    """Wraps a real store and fails the first N transactions."""

    def __init__(self, store, failures):
        self._store = store
        self.failures = failures
        self.calls = 0

    def run_transaction(self, fn):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientConflict("document changed since read")
        return self._store.run_transaction(fn)

    def get(self, ref):
        return self._store.get(ref)

    def list_collection(self, collection):
        return self._store.list_collection(collection)


class InterleavingStore:
    """
    Wraps a real store and runs another writer mid-transaction.

    interleave() runs once, straight after a transaction reads
    trigger (or its first document when trigger is None). It
    commits on the real store before this transaction writes.
    """

    def __init__(self, store, interleave, trigger=None):
        self._store = store
        self._interleave = interleave
        self._trigger = trigger
        self.fired = False

    def run_transaction(self, fn):
        return self._store.run_transaction(
            lambda tx: fn(_InterleavingTransaction(tx, self))
        )

    def after_read(self, ref):
        if self.fired or (self._trigger is not None and ref != self._trigger):
            return
        self.fired = True
        self._interleave()

    def get(self, ref):
        return self._store.get(ref)

    def list_collection(self, collection):
        return self._store.list_collection(collection)


class _InterleavingTransaction:

    def __init__(self, tx, store):
        self._tx = tx
        self._store = store

    def get(self, ref):
        snapshot = self._tx.get(ref)
        self._store.after_read(ref)
        return snapshot

    def create(self, ref, fields):
        self._tx.create(ref, fields)

    def set(self, ref, fields):
        self._tx.set(ref, fields)

    def update(self, ref, fields):
        self._tx.update(ref, fields)


# --- Closing Debts ---

class TestCloseDebt:

    def test_close_writes_doubled_artifact(self, store, apartment):
        """
        B pays 100 split with A, so A owes B 50. Closing that
        debt adds an artifact of 100 paid by B for A and B.
        """
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        result = service.close_debt(debt.id, "B")

        expenses = LedgerService(store).list_expenses("apt-1")
        artifact = next(e for e in expenses if e.id == result.settlement_artifact_id)
        assert artifact.amount == Decimal("100.00")
        assert artifact.payer_id == "B"
        assert artifact.participant_ids == ["A", "B"]
        assert artifact.is_settlement_artifact is True
        assert result.already_closed is False

    def test_close_zeroes_the_pair(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        service.close_debt(debt.id, "B")

        assert net(store, "A") == Decimal("0.00")
        assert net(store, "B") == Decimal("0.00")

    def test_close_marks_debt_closed(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        result = service.close_debt(debt.id, "A")

        [closed] = service.list_debts("apt-1", DebtStatus.CLOSED)
        assert closed.id == debt.id
        assert closed.closed_by == "A"
        assert closed.closed_at == result.closed_at
        assert closed.settlement_artifact_id == result.settlement_artifact_id
        assert service.list_debts("apt-1", DebtStatus.OPEN) == []

    def test_second_close_returns_same_artifact(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        first = service.close_debt(debt.id, "B")
        second = service.close_debt(debt.id, "A")

        assert second.settlement_artifact_id == first.settlement_artifact_id
        assert second.closed_at == first.closed_at
        assert second.already_closed is True
        assert expense_count(store) == 2
        assert len(service.list_actions("apt-1")) == 1

    def test_artifact_hidden_from_monthly_total(self, store, apartment):
        expense = a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")
        service.close_debt(debt.id, "B")

        summary = LedgerService(store).get_monthly_summary(
            "apt-1", expense.created_at.year, expense.created_at.month
        )

        assert summary.total == Decimal("100.00")
        assert [e.id for e in summary.expenses] == [expense.id]


class TestCloseDebtErrors:

    def test_missing_debt_raises_not_found(self, store, apartment):
        with pytest.raises(NotFound, match="not found"):
            SettlementService(store).close_debt("missing", "A")

    def test_non_member_raises_permission_denied(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        with pytest.raises(PermissionDenied, match="not a member"):
            service.close_debt(debt.id, "Z")

        assert service.list_debts("apt-1", DebtStatus.OPEN)[0].id == debt.id
        assert expense_count(store) == 1

    def test_non_member_cannot_see_closed_debt(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")
        service.close_debt(debt.id, "A")

        with pytest.raises(PermissionDenied):
            service.close_debt(debt.id, "Z")

    def test_non_positive_amount_raises_malformed(self, store, apartment):
        store_raw_debt(store, "bad", amount="-5")

        with pytest.raises(Malformed, match="invalid amount"):
            SettlementService(store).close_debt("bad", "A")

        assert store.get(debt_ref("bad")).data["status"] == "open"
        assert expense_count(store) == 0

    def test_missing_debtor_raises_malformed(self, store, apartment):
        store_raw_debt(store, "bad", from_user_id="")

        with pytest.raises(Malformed, match="missing debtor"):
            SettlementService(store).close_debt("bad", "A")

        assert expense_count(store) == 0

    def test_unparseable_amount_raises_malformed(self, store, apartment):
        store_raw_debt(store, "bad", amount="fifty")

        with pytest.raises(Malformed):
            SettlementService(store).close_debt("bad", "A")

    def test_closed_without_artifact_raises_malformed(self, store, apartment):
        store_raw_debt(store, "bad", status="closed")

        with pytest.raises(Malformed, match="without a settlement artifact"):
            SettlementService(store).close_debt("bad", "A")

    def test_errors_are_not_retried(self, store, apartment):
        sleeps = []
        service = SettlementService(store, sleep=sleeps.append)

        with pytest.raises(NotFound):
            service.close_debt("missing", "A")

        assert sleeps == []


class TestUnbackedDebts:
    """A close must never push a pair past zero."""

    def test_debt_without_expenses_rejected(self, store, apartment):
        store_raw_debt(store, "d1")

        with pytest.raises(InvalidRequest, match="exceeds"):
            SettlementService(store).close_debt("d1", "B")

        assert store.get(debt_ref("d1")).data["status"] == "open"
        assert expense_count(store) == 0
        assert net(store, "A") == Decimal("0")
        assert net(store, "B") == Decimal("0")

    def test_debt_larger_than_ledger_rejected(self, store, apartment):
        a_owes_b(store)
        store_raw_debt(store, "d1", amount="80.00")

        with pytest.raises(InvalidRequest, match="exceeds"):
            SettlementService(store).close_debt("d1", "B")

        assert net(store, "A") == Decimal("-50.00")

    def test_second_debt_for_same_money_rejected(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        first = create_debt(service, "A", "B", "50")
        second = create_debt(service, "A", "B", "50")
        service.close_debt(first.id, "B")

        with pytest.raises(InvalidRequest, match="exceeds"):
            service.close_debt(second.id, "B")

        assert net(store, "A") == Decimal("0.00")
        assert net(store, "B") == Decimal("0.00")
        assert len(service.list_actions("apt-1")) == 1


class TestSideEffects:

    def test_projection_moves_by_debt_amount(self, store, apartment):
        a_owes_b(store)
        ledger = LedgerService(store)
        ledger.recompute_projection("apt-1")
        assert ledger.get_projection("apt-1") == {
            "A": Decimal("-50.00"),
            "B": Decimal("50.00"),
        }
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        service.close_debt(debt.id, "B")

        assert ledger.get_projection("apt-1") == {
            "A": Decimal("0.00"),
            "B": Decimal("0.00"),
        }

    def test_projection_matches_recompute(self, store, apartment):
        add_expense(store, "90", "A", ["A", "B", "C"])
        ledger = LedgerService(store)
        ledger.recompute_projection("apt-1")
        service = SettlementService(store)
        debt = create_debt(service, "C", "A", "30")
        service.close_debt(debt.id, "C")

        cached = ledger.get_projection("apt-1")

        assert ledger.recompute_projection("apt-1") == cached

    def test_corrupt_projection_raises_malformed(self, store, apartment):
        a_owes_b(store)
        store.run_transaction(lambda tx: tx.set(
            balance_ref("apt-1", "A"), {"user_id": "A", "balance": "lots"}
        ))
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        with pytest.raises(Malformed, match="projection"):
            service.close_debt(debt.id, "A")

        assert service.list_debts("apt-1", DebtStatus.OPEN)[0].id == debt.id

    def test_audit_record_written(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")

        result = service.close_debt(debt.id, "B")

        [action] = service.list_actions("apt-1")
        assert action.type.value == "debt_closed"
        assert action.debt_id == debt.id
        assert action.settlement_artifact_id == result.settlement_artifact_id
        assert action.actor_id == "B"
        assert action.debtor_id == "A"
        assert action.creditor_id == "B"
        assert action.original_amount == Decimal("50.00")
        assert action.settlement_amount == Decimal("50.00")


# --- Retries ---

class TestRetry:

    def test_retries_then_succeeds(self, store, apartment):
        a_owes_b(store)
        debt = create_debt(SettlementService(store), "A", "B", "50")
        sleeps = []
        flaky = ConflictingStore(store, failures=2)

        result = SettlementService(
            flaky, settings=make_settings(), sleep=sleeps.append
        ).close_debt(debt.id, "B")

        assert result.already_closed is False
        assert sleeps == [0.5, 1.0]
        assert flaky.calls == 3
        assert expense_count(store) == 2

    def test_gives_up_after_max_attempts(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")
        sleeps = []
        flaky = ConflictingStore(store, failures=10)

        with pytest.raises(TransientConflict) as exc_info:
            SettlementService(
                flaky, settings=make_settings(), sleep=sleeps.append
            ).close_debt(debt.id, "B")

        assert exc_info.value.attempts == 3
        assert sleeps == [0.5, 1.0]
        assert service.list_debts("apt-1", DebtStatus.OPEN)[0].id == debt.id
        assert expense_count(store) == 1

    def test_backoff_uses_configured_base(self, store, apartment):
        a_owes_b(store)
        debt = create_debt(SettlementService(store), "A", "B", "50")
        sleeps = []

        with pytest.raises(TransientConflict) as exc_info:
            SettlementService(
                ConflictingStore(store, failures=10),
                settings=make_settings(max_attempts=4, base=0.1),
                sleep=sleeps.append,
            ).close_debt(debt.id, "B")

        assert exc_info.value.attempts == 4
        assert sleeps == pytest.approx([0.1, 0.2, 0.4])


class TestConcurrentClose:
    """Another writer commits between this transaction's reads and writes."""

    def test_debt_closed_elsewhere_returns_that_settlement(self, store, apartment):
        """
        The debt is closed by someone else after this close read
        it. The write conflicts, the retry re-reads the debt and
        reports the other close instead of writing a second one.
        """
        a_owes_b(store)
        debt = create_debt(SettlementService(store), "A", "B", "50")
        other = {}

        def close_elsewhere():
            other["result"] = SettlementService(store).close_debt(debt.id, "A")

        racing = InterleavingStore(store, close_elsewhere, trigger=debt_ref(debt.id))
        sleeps = []

        result = SettlementService(
            racing, settings=make_settings(), sleep=sleeps.append
        ).close_debt(debt.id, "B")

        assert racing.fired
        assert sleeps == [0.5]
        assert result.already_closed is True
        assert result.settlement_artifact_id == other["result"].settlement_artifact_id
        assert expense_count(store) == 2
        assert len(SettlementService(store).list_actions("apt-1")) == 1
        assert net(store, "A") == Decimal("0.00")

    def test_projection_changed_elsewhere_is_not_lost(self, store, apartment):
        """
        A second debt between the same pair closes after this
        close read the cached balances. Both deltas must land.
        """
        a_owes_b(store, "160")
        ledger = LedgerService(store)
        ledger.recompute_projection("apt-1")
        service = SettlementService(store)
        first = create_debt(service, "A", "B", "50")
        second = create_debt(service, "A", "B", "30")

        racing = InterleavingStore(
            store,
            lambda: SettlementService(store).close_debt(second.id, "A"),
            trigger=balance_ref("apt-1", "B"),
        )
        sleeps = []

        SettlementService(
            racing, settings=make_settings(), sleep=sleeps.append
        ).close_debt(first.id, "B")

        assert racing.fired
        assert sleeps == [0.5]
        assert ledger.get_projection("apt-1") == {
            "A": Decimal("0.00"),
            "B": Decimal("0.00"),
        }
        assert ledger.recompute_projection("apt-1") == ledger.get_projection("apt-1")

    def test_concurrent_settles_cannot_overpay(self, store, apartment):
        """
        Two settlements of 40 against a 50 debt: the one that
        commits second sees the first and is rejected.
        """
        a_owes_b(store)
        racing = InterleavingStore(
            store,
            lambda: SettlementService(store).settle(
                "apt-1", settle_request("A", "B", "40")
            ),
        )

        with pytest.raises(InvalidRequest, match="exceeds"):
            SettlementService(racing, settings=make_settings()).settle(
                "apt-1", settle_request("A", "B", "40")
            )

        assert racing.fired
        assert net(store, "A") == Decimal("-10.00")
        assert len(SettlementService(store).list_debts("apt-1", DebtStatus.CLOSED)) == 1
        assert len(SettlementService(store).list_actions("apt-1")) == 1


# --- Creating Debts ---

class TestCreateDebt:

    def test_create_debt_is_open(self, store, apartment):
        a_owes_b(store)
        debt = create_debt(SettlementService(store), "A", "B", "12.50")

        assert debt.status == DebtStatus.OPEN
        assert debt.amount == Decimal("12.50")
        assert store.get(debt_ref(debt.id)).data["from_user_id"] == "A"

    def test_open_debt_does_not_change_balances(self, store, apartment):
        a_owes_b(store)
        create_debt(SettlementService(store), "A", "B", "20")
        assert net(store, "A") == Decimal("-50.00")

    def test_debt_without_ledger_backing_rejected(self, store, apartment):
        service = SettlementService(store)

        with pytest.raises(InvalidRequest, match="exceeds"):
            create_debt(service, "A", "B", "10")

        assert service.list_debts("apt-1") == []

    def test_debt_in_wrong_direction_rejected(self, store, apartment):
        a_owes_b(store)
        with pytest.raises(InvalidRequest, match="exceeds"):
            create_debt(SettlementService(store), "B", "A", "10")

    def test_self_debt_rejected(self, store, apartment):
        with pytest.raises(InvalidRequest, match="themselves"):
            create_debt(SettlementService(store), "A", "A", "10")

    def test_non_member_party_rejected(self, store, apartment):
        with pytest.raises(InvalidRequest, match="not a member"):
            create_debt(SettlementService(store), "A", "Z", "10")

    def test_non_member_actor_rejected(self, store, apartment):
        with pytest.raises(PermissionDenied):
            create_debt(SettlementService(store), "A", "B", "10", actor="Z")

    def test_list_debts_filters_by_status(self, store, apartment):
        add_expense(store, "90", "B", ["A", "B", "C"])
        service = SettlementService(store)
        first = create_debt(service, "A", "B", "10")
        second = create_debt(service, "C", "B", "20")
        service.close_debt(first.id, "A")

        assert [d.id for d in service.list_debts("apt-1", DebtStatus.OPEN)] == [second.id]
        assert len(service.list_debts("apt-1")) == 2
        assert service.list_debts("other-apt") == []


# --- Settle Up ---

class TestSettle:

    def test_partial_settle(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)

        result = service.settle("apt-1", settle_request("A", "B", "20"))

        [debt] = service.list_debts("apt-1", DebtStatus.CLOSED)
        assert debt.id == result.debt_id
        assert debt.amount == Decimal("20.00")
        assert net(store, "A") == Decimal("-30.00")

    def test_settle_records_outstanding_amount(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)

        service.settle("apt-1", settle_request("A", "B", "20"))

        [action] = service.list_actions("apt-1")
        assert action.original_amount == Decimal("50.00")
        assert action.settlement_amount == Decimal("20.00")

    def test_settle_simplified_debt(self, store, apartment):
        """C owes A 45 only after simplification."""
        add_expense(store, "90", "A", ["A", "B", "C"])
        add_expense(store, "30", "B", ["B", "C"])
        service = SettlementService(store)

        service.settle("apt-1", settle_request("C", "A", "45"))

        assert net(store, "C") == Decimal("0.00")

    def test_amount_over_outstanding_rejected(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)

        with pytest.raises(InvalidRequest, match="exceeds"):
            service.settle("apt-1", settle_request("A", "B", "60"))

        assert service.list_debts("apt-1") == []
        assert expense_count(store) == 1

    def test_nothing_owed_rejected(self, store, apartment):
        with pytest.raises(InvalidRequest, match="exceeds"):
            SettlementService(store).settle("apt-1", settle_request("A", "B", "5"))

    def test_retried_settle_checks_the_ledger_again(self, store, apartment):
        a_owes_b(store)
        sleeps = []

        result = SettlementService(
            ConflictingStore(store, failures=1),
            settings=make_settings(),
            sleep=sleeps.append,
        ).settle("apt-1", settle_request("A", "B", "50"))

        assert sleeps == [0.5]
        assert result.already_closed is False
        assert net(store, "A") == Decimal("0.00")

    def test_settled_debt_closes_idempotently(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        result = service.settle("apt-1", settle_request("A", "B", "50"))

        again = service.close_debt(result.debt_id, "B")

        assert again.already_closed is True
        assert again.settlement_artifact_id == result.settlement_artifact_id


# --- Member Removal ---

class TestCanRemoveMember:

    def test_member_with_balance_cannot_leave(self, store, apartment):
        a_owes_b(store)

        check = SettlementService(store).can_remove_member("apt-1", "A")

        assert check.net_balance == Decimal("-50.00")
        assert check.has_open_debts is False
        assert check.can_be_removed is False

    def test_member_with_open_debt_cannot_leave(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        create_debt(service, "A", "B", "10")

        check = service.can_remove_member("apt-1", "B")

        assert check.has_open_debts is True
        assert check.can_be_removed is False

    def test_settled_member_can_leave(self, store, apartment):
        a_owes_b(store)
        service = SettlementService(store)
        debt = create_debt(service, "A", "B", "50")
        service.close_debt(debt.id, "A")

        check = service.can_remove_member("apt-1", "A")

        assert check.can_be_removed is True

    def test_inactive_member_can_leave(self, store, apartment):
        check = SettlementService(store).can_remove_member("apt-1", "C")

        assert check.net_balance == Decimal("0")
        assert check.can_be_removed is True
