"""
Auction close and winner Schemas.
"""

from pydantic import BaseModel
from decimal import Decimal
from typing import List, Optional

from backend.app.domain.auction.winner_set import WinnerSet
from backend.app.schemas.invoice import InvoiceResponse


class WonItemResponse(BaseModel):
    item_id: int
    winning_bid_id: Optional[int]
    seller_id: Optional[int]
    hammer: Decimal
    premium: Decimal
    tax: Decimal
    line_total: Decimal
    reserve_met: bool

    class Config:
        from_attributes = True


class WinnerResponse(BaseModel):
    bidder_id: int
    items: List[WonItemResponse]
    subtotal: Decimal
    total_amount: Decimal


class WinnerSetResponse(BaseModel):
    auction_id: int
    is_final: bool
    winners: List[WinnerResponse]

    @classmethod
    def from_winner_set(cls, winner_set: WinnerSet) -> "WinnerSetResponse":
        return cls(
            auction_id=winner_set.auction_id,
            is_final=winner_set.is_final,
            winners=[
                WinnerResponse(
                    bidder_id=group.bidder_id,
                    items=[WonItemResponse.model_validate(item) for item in group.items],
                    subtotal=group.subtotal,
                    total_amount=group.total_amount,
                )
                for _, group in sorted(winner_set.winners.items())
            ],
        )


class CloseAuctionResponse(BaseModel):
    auction_id: int
    already_closed: bool
    winner_set: WinnerSetResponse
    invoices: List[InvoiceResponse]
