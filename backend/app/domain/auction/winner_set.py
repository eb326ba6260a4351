"""
Winner set value types produced at auction close.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from backend.app.domain.billing.fees import calculate_item_fees, sum_money
from backend.app.models.auction_item import AuctionItem


@dataclass(frozen=True)
class WonItem:
    item_id: int
    winning_bid_id: Optional[int]
    seller_id: Optional[int]
    hammer: Decimal
    premium: Decimal
    tax: Decimal
    line_total: Decimal
    reserve_met: bool

    @classmethod
    def from_item(cls, item: AuctionItem, hammer: Decimal, winning_bid_id: Optional[int]) -> "WonItem":
        fees = calculate_item_fees(hammer, item.buyers_premium_percent, item.tax_percent)
        return cls(
            item_id=item.id,
            winning_bid_id=winning_bid_id,
            seller_id=item.seller_id,
            hammer=fees.hammer,
            premium=fees.premium,
            tax=fees.tax,
            line_total=fees.line_total,
            reserve_met=item.reserve_price is None or fees.hammer >= item.reserve_price,
        )

    @classmethod
    def from_charges(
        cls,
        item: AuctionItem,
        winning_bid_id: Optional[int],
        hammer: Decimal,
        premium: Decimal,
        tax: Decimal,
        line_total: Decimal,
    ) -> "WonItem":
        """Rebuild a won item from amounts already written to an invoice."""
        return cls(
            item_id=item.id,
            winning_bid_id=winning_bid_id,
            seller_id=item.seller_id,
            hammer=hammer,
            premium=premium,
            tax=tax,
            line_total=line_total,
            reserve_met=item.reserve_price is None or hammer >= item.reserve_price,
        )


@dataclass
class WinnerGroup:
    bidder_id: int
    items: List[WonItem] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return sum_money(item.hammer for item in self.items)

    @property
    def total_amount(self) -> Decimal:
        return sum_money(item.line_total for item in self.items)


@dataclass
class WinnerSet:
    """Winning bidder -> items won in one auction."""
    auction_id: int
    winners: Dict[int, WinnerGroup] = field(default_factory=dict)
    is_final: bool = True

    def add(self, bidder_id: int, won: WonItem) -> None:
        self.winners.setdefault(bidder_id, WinnerGroup(bidder_id=bidder_id)).items.append(won)

    @property
    def is_empty(self) -> bool:
        return not self.winners

    @property
    def item_count(self) -> int:
        return sum(len(group.items) for group in self.winners.values())
