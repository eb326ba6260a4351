"""
Auction close, winners and invoice generation endpoints.
"""

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import (
    get_current_user, get_invoice_consolidator, get_winner_resolver
)
from backend.app.core.guards import require_role
from backend.app.domain.auction.winner_resolver import WinnerResolver
from backend.app.domain.billing.invoice_consolidator import InvoiceConsolidator
from backend.app.schemas.auction import CloseAuctionResponse, WinnerSetResponse
from backend.app.schemas.invoice import InvoiceResponse

router = APIRouter(prefix="/auctions", tags=["Auctions"])
admin_router = APIRouter(prefix="/admin", tags=["Admin - Auctions"])


@router.get("/{auction_id}/winners", response_model=WinnerSetResponse)
async def get_winners(
    auction_id: int = Path(..., description="Auction ID"),
    current_user: dict = Depends(get_current_user),
    resolver: WinnerResolver = Depends(get_winner_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Winners of a closed auction, or the provisional leaders of an open one."""
    winner_set = await resolver.winners(db, auction_id)
    return WinnerSetResponse.from_winner_set(winner_set)


@admin_router.post("/auctions/{auction_id}/close", response_model=CloseAuctionResponse)
async def close_auction(
    auction_id: int = Path(..., description="Auction ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    resolver: WinnerResolver = Depends(get_winner_resolver),
    db: AsyncSession = Depends(get_db)
):
    """
    Close an auction and issue its invoices.

    Safe to retry: a closed auction returns its existing result.
    """
    result = await resolver.close_auction(db, auction_id, actor_id=current_user["user_id"])
    return CloseAuctionResponse(
        auction_id=result.auction_id,
        already_closed=result.already_closed,
        winner_set=WinnerSetResponse.from_winner_set(result.winner_set),
        invoices=[InvoiceResponse.model_validate(invoice) for invoice in result.invoices],
    )


@admin_router.post("/auctions/{auction_id}/invoices", response_model=List[InvoiceResponse])
async def generate_auction_invoices(
    auction_id: int = Path(..., description="Auction ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    resolver: WinnerResolver = Depends(get_winner_resolver),
    db: AsyncSession = Depends(get_db)
):
    """Generate (or return) one invoice per winning bidder of a closed auction."""
    return await resolver.generate_invoices(db, auction_id, actor_id=current_user["user_id"])


@admin_router.post("/items/{item_id}/invoice", response_model=InvoiceResponse)
async def generate_item_invoice(
    item_id: int = Path(..., description="Auction item ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    consolidator: InvoiceConsolidator = Depends(get_invoice_consolidator),
    db: AsyncSession = Depends(get_db)
):
    """Issue (or return) a single-item invoice for a sold item."""
    return await consolidator.generate_item_invoice(db, item_id, actor_id=current_user["user_id"])
