"""
Bid increment ladder.

    price < 50        -> +2
    50  <= price < 100  -> +5
    100 <= price < 250  -> +10
    250 <= price < 1000 -> +25
    price >= 1000       -> +50
"""

from decimal import Decimal
from typing import Any, Optional

from backend.app.domain.billing.money import to_money

# (exclusive upper bound, increment); the last tier has no bound
INCREMENT_TIERS = (
    (Decimal("50"), Decimal("2")),
    (Decimal("100"), Decimal("5")),
    (Decimal("250"), Decimal("10")),
    (Decimal("1000"), Decimal("25")),
)
TOP_INCREMENT = Decimal("50")


def bid_increment(current_price: Any) -> Decimal:
    price = to_money(current_price)
    for upper, increment in INCREMENT_TIERS:
        if price < upper:
            return increment
    return TOP_INCREMENT


def min_next_bid(current_price: Any) -> Decimal:
    """Minimum legal bid above current_price."""
    price = to_money(current_price)
    return to_money(price + bid_increment(price))


def minimum_acceptable_bid(base_price: Any, current_bid: Optional[Any]) -> Decimal:
    """The base price itself for an item with no bids, else the next rung."""
    if current_bid is None:
        return to_money(base_price)
    return min_next_bid(current_bid)
