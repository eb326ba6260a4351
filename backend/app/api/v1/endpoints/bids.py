"""
Bidding API Endpoints.

Thin adapters over the bid evaluator: place a bid, quote the minimum, list
the ledger.
"""

from fastapi import APIRouter, Depends, Path, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_bid_evaluator, get_current_user
from backend.app.core.guards import require_role
from backend.app.domain.bidding.bid_evaluator import BidEvaluator
from backend.app.schemas.bidding import (
    BidCreate, BidResponse, BidPlacementResponse, MinimumBidResponse
)

router = APIRouter(prefix="/items", tags=["Bidding"])


@router.post("/{item_id}/bids", response_model=BidPlacementResponse, status_code=status.HTTP_201_CREATED)
async def place_bid(
    bid: BidCreate,
    item_id: int = Path(..., description="Auction item ID"),
    current_user: dict = Depends(require_role([UserRole.BIDDER, UserRole.ADMIN])),
    evaluator: BidEvaluator = Depends(get_bid_evaluator),
    db: AsyncSession = Depends(get_db)
):
    """
    Place a bid on an item.

    A rejected bid returns 409 with the reason and, for BidTooLow, the
    current minimum so the client can retry.
    """
    placement = await evaluator.place_bid(db, item_id, current_user["user_id"], bid.amount)
    return BidPlacementResponse(
        bid=BidResponse.model_validate(placement.bid),
        current_bid=placement.current_bid,
        bid_count=placement.bid_count,
        is_reserve_met=placement.is_reserve_met,
        minimum_next_bid=placement.minimum_next_bid,
    )


@router.get("/{item_id}/minimum-bid", response_model=MinimumBidResponse)
async def get_minimum_bid(
    item_id: int = Path(..., description="Auction item ID"),
    current_user: dict = Depends(get_current_user),
    evaluator: BidEvaluator = Depends(get_bid_evaluator),
    db: AsyncSession = Depends(get_db)
):
    """Current minimum acceptable bid for an item."""
    quote = await evaluator.minimum_bid(db, item_id)
    return MinimumBidResponse(
        item_id=quote.item_id,
        current_bid=quote.current_bid,
        bid_count=quote.bid_count,
        minimum_bid=quote.minimum_bid,
        is_reserve_met=quote.is_reserve_met,
    )


@router.get("/{item_id}/bids", response_model=List[BidResponse])
async def list_bids(
    item_id: int = Path(..., description="Auction item ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Bid ledger for an item, highest first."""
    return await BidEvaluator.list_bids(db, item_id)
