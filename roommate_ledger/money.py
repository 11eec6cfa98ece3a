"""
Money helpers.

Amounts are Decimals rounded to cents. Anything within
BALANCE_TOLERANCE of zero (one cent by default) counts as settled.
"""

from decimal import Decimal, ROUND_HALF_UP

from roommate_ledger.config import get_settings

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value) -> Decimal:
    """Round to two decimal places, half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


TOLERANCE = round_money(get_settings().BALANCE_TOLERANCE)


def is_settled(value: Decimal) -> bool:
    return abs(value) <= TOLERANCE
