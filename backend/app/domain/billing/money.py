"""
Money helpers.

All amounts are Decimal and rounded half-up to the currency's minor unit.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")
# Largest value a Numeric(12, 2) column holds
MAX_AMOUNT = Decimal("9999999999.99")


def to_money(value: Any) -> Decimal:
    """Coerce int/str/float/Decimal to a 2dp Decimal (half-up)."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def percent_of(amount: Decimal, percent: Any) -> Decimal:
    """Unrounded ``amount * percent / 100``."""
    if not percent:
        return Decimal(0)
    return Decimal(amount) * Decimal(str(percent)) / HUNDRED


def is_currency_value(value: Any, signed: bool = False) -> bool:
    """
    True for finite values with at most two decimal places that fit a
    Numeric(12, 2) column. Negative values pass only when signed is set.
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            return False
        if abs(amount) > MAX_AMOUNT or (amount < 0 and not signed):
            return False
        return amount == amount.quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        return False
