"""
Bidding Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class BidCreate(BaseModel):
    """Schema for submitting a bid. Amount is validated by the evaluator."""
    amount: Decimal = Field(..., gt=0)


class BidResponse(BaseModel):
    id: int
    item_id: int
    bidder_id: int
    amount: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class BidPlacementResponse(BaseModel):
    """Result of an admitted bid."""
    bid: BidResponse
    current_bid: Decimal
    bid_count: int
    is_reserve_met: bool
    minimum_next_bid: Decimal


class MinimumBidResponse(BaseModel):
    item_id: int
    current_bid: Optional[Decimal]
    bid_count: int
    minimum_bid: Decimal
    is_reserve_met: bool
