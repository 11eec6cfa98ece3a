"""
Debt simplification.

Collapses a who-owes-whom graph into fewer transfers without
changing anyone's net balance.

Step 1 (net_pairs): if A owes B and B owes A, keep only the
difference, owed by whoever owed more. A pair whose difference
is within one cent is cleared.

Step 2 (minimal_transfers): repeatedly match the largest
remaining creditor against the largest remaining debtor and
transfer the smaller of the two amounts. Ties break by user id,
so the same input always yields the same plan. Produces at most
n - 1 transfers for n users with a nonzero balance.
"""

import logging
from decimal import Decimal

from roommate_ledger.money import TOLERANCE, ZERO, round_money
from roommate_ledger.schemas.ledger import BalanceEntry, Transfer

logger = logging.getLogger(__name__)


def _copy(balances: dict[str, BalanceEntry]) -> dict[str, BalanceEntry]:
    return {
        user_id: BalanceEntry(
            user_id=user_id,
            owes=dict(entry.owes),
            owed=dict(entry.owed),
            net_balance=entry.net_balance,
        )
        for user_id, entry in balances.items()
    }


def _clear_pair(balances: dict[str, BalanceEntry], a: str, b: str) -> None:
    for x, y in ((a, b), (b, a)):
        balances[x].owes.pop(y, None)
        balances[x].owed.pop(y, None)


def net_pairs(balances: dict[str, BalanceEntry]) -> dict[str, BalanceEntry]:
    """Replace opposing debts between each pair with a single net debt."""
    result = _copy(balances)
    user_ids = sorted(result)

    for i, a in enumerate(user_ids):
        for b in user_ids[i + 1:]:
            a_owes_b = result[a].owes.get(b, ZERO)
            b_owes_a = result[b].owes.get(a, ZERO)
            if a_owes_b <= 0 or b_owes_a <= 0:
                continue

            net = round_money(a_owes_b - b_owes_a)
            _clear_pair(result, a, b)
            if net > TOLERANCE:
                result[a].owes[b] = net
                result[b].owed[a] = net
            elif net < -TOLERANCE:
                result[b].owes[a] = -net
                result[a].owed[b] = -net

    for entry in result.values():
        entry.net_balance = entry.compute_net()
    return result


def _largest(remaining: dict[str, Decimal]) -> str:
    return min(remaining, key=lambda user_id: (-remaining[user_id], user_id))


def minimal_transfers(net_balances: dict[str, Decimal]) -> list[Transfer]:
    """
    Greedy transfer plan for a set of net balances.

    Positive balance = creditor, negative = debtor. Balances
    within one cent of zero are ignored.
    """
    creditors = {
        user_id: round_money(amount)
        for user_id, amount in net_balances.items()
        if amount > TOLERANCE
    }
    debtors = {
        user_id: round_money(-amount)
        for user_id, amount in net_balances.items()
        if amount < -TOLERANCE
    }

    transfers: list[Transfer] = []
    while creditors and debtors:
        creditor_id = _largest(creditors)
        debtor_id = _largest(debtors)
        amount = round_money(min(creditors[creditor_id], debtors[debtor_id]))

        transfers.append(Transfer(
            from_user_id=debtor_id,
            to_user_id=creditor_id,
            amount=amount,
        ))

        creditors[creditor_id] = round_money(creditors[creditor_id] - amount)
        debtors[debtor_id] = round_money(debtors[debtor_id] - amount)
        if creditors[creditor_id] <= TOLERANCE:
            del creditors[creditor_id]
        if debtors[debtor_id] <= TOLERANCE:
            del debtors[debtor_id]

    if creditors or debtors:
        logger.debug(
            "Unmatched residue after simplification: creditors=%s debtors=%s",
            creditors, debtors,
        )
    return transfers


def simplify(balances: dict[str, BalanceEntry]) -> dict[str, BalanceEntry]:
    """
    Collapse balances into the greedy transfer plan.

    Each user's net_balance in the result is the one computed
    from the input; only the owes/owed structure changes.
    """
    netted = net_pairs(balances)
    transfers = minimal_transfers(
        {user_id: entry.net_balance for user_id, entry in netted.items()}
    )

    simplified = {
        user_id: BalanceEntry(user_id=user_id, net_balance=entry.compute_net())
        for user_id, entry in balances.items()
    }
    for transfer in transfers:
        simplified[transfer.from_user_id].owes[transfer.to_user_id] = transfer.amount
        simplified[transfer.to_user_id].owed[transfer.from_user_id] = transfer.amount

    return simplified


def count_edges(balances: dict[str, BalanceEntry]) -> int:
    """Number of nonzero directed debts in a balance map."""
    return sum(
        1
        for entry in balances.values()
        for amount in entry.owes.values()
        if amount > 0
    )
