"""
Buyer fee math for won items.

    premium    = hammer * buyers_premium%
    tax        = (hammer + premium) * tax%
    line_total = round2(hammer + premium + tax)

The line total is rounded once, from unrounded parts. The stored premium is
rounded on its own and the stored tax absorbs the remaining cent, so the
three stored parts always add up to the stored line total exactly.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable

from backend.app.domain.billing.money import percent_of, to_money, ZERO


@dataclass(frozen=True)
class ItemFees:
    hammer: Decimal
    premium: Decimal
    tax: Decimal
    line_total: Decimal


def calculate_item_fees(hammer: Any, buyers_premium_percent: Any, tax_percent: Any) -> ItemFees:
    """Compute premium, tax and line total for a single hammer price."""
    hammer = to_money(hammer)
    raw_premium = percent_of(hammer, buyers_premium_percent)
    raw_tax = percent_of(hammer + raw_premium, tax_percent)

    line_total = to_money(hammer + raw_premium + raw_tax)
    premium = to_money(raw_premium)
    tax = line_total - hammer - premium

    return ItemFees(hammer=hammer, premium=premium, tax=tax, line_total=line_total)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    return to_money(sum(values, ZERO))
