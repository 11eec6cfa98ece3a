"""
Balance computation engine.

Folds a list of expense records into per-user balance entries.
Pure functions: no I/O, no shared state, every call builds a
fresh map, so concurrent calls on different snapshots are safe.

Rules:
1. share = amount / number of participants
2. Every participant other than the payer owes the payer one share
3. Each pairwise accumulation is rounded to cents as it happens
4. Records that cannot be folded are skipped and logged, never raised

Settlement artifacts fold in the opposite direction: the payer
(the creditor of the closed debt) ends up owing each other
participant one share, which cancels the debt for that pair.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Iterable

from roommate_ledger.money import TOLERANCE, ZERO, round_money
from roommate_ledger.schemas.ledger import (
    BalanceEntry,
    ExpenseRecord,
    MonthlySummary,
    SettlementPayment,
)
from roommate_ledger.services.simplifier import net_pairs

logger = logging.getLogger(__name__)


def _entry(balances: dict[str, BalanceEntry], user_id: str) -> BalanceEntry:
    if user_id not in balances:
        balances[user_id] = BalanceEntry(user_id=user_id)
    return balances[user_id]


def _participants(expense: ExpenseRecord) -> list[str]:
    """Distinct, non-blank participant ids in their original order."""
    ids = expense.participant_ids or []
    return [pid for pid in dict.fromkeys(ids) if pid and isinstance(pid, str)]


def _skip_reason(expense: ExpenseRecord, participants: list[str]) -> str | None:
    if not expense.payer_id or not isinstance(expense.payer_id, str):
        return "unknown payer"
    amount = expense.amount
    if not isinstance(amount, Decimal) or not amount.is_finite():
        return f"non-finite amount {amount!r}"
    if amount <= 0:
        return f"non-positive amount {amount}"
    if not participants:
        return "no participants"
    return None


def _accumulate(
    balances: dict[str, BalanceEntry],
    debtor_id: str,
    creditor_id: str,
    amount: Decimal,
) -> None:
    debtor = _entry(balances, debtor_id)
    creditor = _entry(balances, creditor_id)
    debtor.owes[creditor_id] = round_money(
        debtor.owes.get(creditor_id, ZERO) + amount
    )
    creditor.owed[debtor_id] = round_money(
        creditor.owed.get(debtor_id, ZERO) + amount
    )


def _fold_expense(balances: dict[str, BalanceEntry], expense: ExpenseRecord) -> None:
    participants = _participants(expense)
    reason = _skip_reason(expense, participants)
    if reason:
        logger.warning("Skipping expense %s: %s", expense.id, reason)
        return

    payer_id = expense.payer_id
    share = round_money(expense.amount / len(participants))
    _entry(balances, payer_id)

    for participant_id in participants:
        if participant_id == payer_id:
            continue
        if expense.is_settlement_artifact:
            _accumulate(balances, payer_id, participant_id, share)
        else:
            _accumulate(balances, participant_id, payer_id, share)


def _apply_payment(
    balances: dict[str, BalanceEntry], payment: SettlementPayment
) -> None:
    """Reduce an existing pairwise debt by a recorded payment."""
    if not payment.from_user_id or not payment.to_user_id or payment.amount <= 0:
        logger.warning("Skipping settlement payment %r", payment)
        return

    debtor = _entry(balances, payment.from_user_id)
    creditor = _entry(balances, payment.to_user_id)

    if payment.to_user_id in debtor.owes:
        remaining = round_money(debtor.owes[payment.to_user_id] - payment.amount)
        if remaining <= TOLERANCE:
            del debtor.owes[payment.to_user_id]
        else:
            debtor.owes[payment.to_user_id] = remaining

    if payment.from_user_id in creditor.owed:
        remaining = round_money(creditor.owed[payment.from_user_id] - payment.amount)
        if remaining <= TOLERANCE:
            del creditor.owed[payment.from_user_id]
        else:
            creditor.owed[payment.from_user_id] = remaining


def total_net(balances: dict[str, BalanceEntry]) -> Decimal:
    """Sum of every user's net balance. Zero in a consistent ledger."""
    return round_money(sum((e.net_balance for e in balances.values()), ZERO))


def compute_raw_balances(
    expenses: Iterable[ExpenseRecord],
    settlements: Iterable[SettlementPayment] = (),
) -> dict[str, BalanceEntry]:
    """
    Fold expenses into itemized per-payer balances.

    No netting: if A owes B and B owes A, both entries remain.
    Use this to show debts itemized by who paid.

    settlements are direct payments recorded outside the debt
    flow, for callers importing older ledgers. The services never
    pass any: in this application a payment is always a closed
    debt plus its settlement artifact.
    """
    balances: dict[str, BalanceEntry] = {}

    for expense in expenses:
        try:
            _fold_expense(balances, expense)
        except (InvalidOperation, TypeError, ValueError, AttributeError) as e:
            logger.warning(
                "Skipping expense %s: %s", getattr(expense, "id", None), e
            )

    for payment in settlements:
        _apply_payment(balances, payment)

    for entry in balances.values():
        entry.net_balance = entry.compute_net()

    return balances


def compute_balances(
    expenses: Iterable[ExpenseRecord],
    settlements: Iterable[SettlementPayment] = (),
) -> dict[str, BalanceEntry]:
    """
    Fold expenses into balances with opposing pairwise debts netted.

    After netting, at most one of A.owes[B] and B.owes[A] is set.
    """
    return net_pairs(compute_raw_balances(expenses, settlements))


def monthly_summary(
    expenses: Iterable[ExpenseRecord],
    year: int,
    month: int,
    user_id: str | None = None,
) -> MonthlySummary:
    """
    Spending for one calendar month.

    Settlement artifacts are excluded: they move no real money.
    Records the balance fold would skip are left out as well.
    personal_total is user_id's share of the month's expenses.
    """
    monthly = [
        e for e in expenses
        if not e.is_settlement_artifact
        and e.created_at.year == year
        and e.created_at.month == month
        and _skip_reason(e, _participants(e)) is None
    ]

    total = ZERO
    personal_total = ZERO
    for expense in monthly:
        total += expense.amount
        participants = _participants(expense)
        if user_id and user_id in participants:
            personal_total += expense.amount / len(participants)

    return MonthlySummary(
        year=year,
        month=month,
        expenses=monthly,
        total=round_money(total),
        personal_total=round_money(personal_total),
    )
