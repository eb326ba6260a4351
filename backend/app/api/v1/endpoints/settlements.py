"""
Settlement API Endpoints.

Admin calculation, listing, export and lifecycle routes, plus the seller's
read-only view.
"""

import csv
from io import StringIO

from fastapi import APIRouter, Depends, Path, Query, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Callable, List, Optional

from backend.app.db.session import get_db
from backend.app.models.billing_enums import SettlementStatus
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_sessionmaker, get_settlement_calculator
from backend.app.core.guards import require_role
from backend.app.domain.billing.settlement_calculator import SettlementCalculator
from backend.app.domain.clock import utcnow
from backend.app.schemas.settlement import (
    BatchOutcomeResponse,
    BatchStatusUpdate,
    BulkSettlementCreate,
    SettlementDetailResponse,
    SettlementAdjustmentsUpdate,
    SettlementCreate,
    SettlementResponse,
    SettlementStatusUpdate,
    UnsettledItemResponse,
    UnsoldLotResponse,
)
from backend.app.schemas.notification import NotificationResponse

router = APIRouter(prefix="/admin/settlements", tags=["Admin - Settlements"])
seller_router = APIRouter(prefix="/sellers/me", tags=["Seller - Settlements"])


EXPORT_COLUMNS = [
    "reference", "seller_id", "auction_id", "status", "total_sales", "commission",
    "adjustments_total", "net_payout", "currency", "generated_at", "paid_at", "item_count",
]


@router.get("", response_model=List[SettlementResponse])
async def list_settlements(
    status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
    seller_id: Optional[int] = Query(None),
    auction_id: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await SettlementCalculator.list_settlements(
        db, status=status_filter, seller_id=seller_id, auction_id=auction_id, limit=limit, offset=offset
    )


@router.get("/export")
async def export_settlements(
    status_filter: Optional[SettlementStatus] = Query(None, alias="status"),
    seller_id: Optional[int] = Query(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Filtered settlements as a CSV download."""
    settlements = await SettlementCalculator.list_settlements(
        db, status=status_filter, seller_id=seller_id, limit=10000
    )

    buf = StringIO()
    writer = csv.writer(buf)
    writer.writerow(EXPORT_COLUMNS)
    for s in settlements:
        writer.writerow([
            s.reference,
            s.seller_id,
            s.auction_id or "",
            s.status.value,
            s.total_sales,
            s.commission,
            s.adjustments_total,
            s.net_payout,
            s.currency,
            s.generated_at.date().isoformat(),
            s.paid_at.date().isoformat() if s.paid_at else "",
            len(s.items),
        ])
    csv_text = buf.getvalue()
    buf.close()

    filename = f"settlements_export_{utcnow().date().isoformat()}.csv"
    return Response(
        content=csv_text.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("", response_model=SettlementResponse, status_code=status.HTTP_201_CREATED)
async def create_settlement(
    request: SettlementCreate,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    db: AsyncSession = Depends(get_db)
):
    """Settle a seller's unsettled sold items (one auction, or all when auction_id is omitted)."""
    return await calculator.calculate_settlement(
        db,
        seller_id=request.seller_id,
        auction_id=request.auction_id,
        commission_rate=request.commission_rate,
        adjustments=request.adjustments,
        actor_id=current_user["user_id"],
    )


@router.post("/bulk", response_model=List[SettlementResponse], status_code=status.HTTP_201_CREATED)
async def bulk_create_settlements(
    request: BulkSettlementCreate,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    db: AsyncSession = Depends(get_db)
):
    """One settlement per seller with unsettled sold items in the auction."""
    return await calculator.bulk_calculate(
        db, request.auction_id, request.commission_rate, actor_id=current_user["user_id"]
    )


@router.get("/unsettled-items", response_model=List[UnsettledItemResponse])
async def list_unsettled_items(
    auction_id: Optional[int] = Query(None),
    seller_id: Optional[int] = Query(None),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    return await SettlementCalculator.unsettled_items(db, auction_id=auction_id, seller_id=seller_id)


@router.patch("/batch", response_model=List[BatchOutcomeResponse])
async def batch_update_status(
    request: BatchStatusUpdate,
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    session_factory: Callable = Depends(get_sessionmaker),
):
    """
    Move several settlements to one status.

    Each record commits or fails on its own; the response reports every one.
    """
    return await calculator.batch_update_status(
        session_factory, request.settlement_ids, request.status, actor_id=current_user["user_id"]
    )


@router.get("/{settlement_id}", response_model=SettlementDetailResponse)
async def get_settlement(
    settlement_id: int = Path(..., description="Settlement ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Settlement with the seller's unsold lots from the same auctions and why each did not sell."""
    settlement = await SettlementCalculator.get_settlement(db, settlement_id)
    lots = await SettlementCalculator.unsold_lots(db, settlement)
    return SettlementDetailResponse(
        **SettlementResponse.model_validate(settlement).model_dump(),
        unsold_items=[UnsoldLotResponse.model_validate(lot) for lot in lots],
    )


@router.post("/{settlement_id}/remind", response_model=NotificationResponse)
async def remind_seller(
    settlement_id: int = Path(..., description="Settlement ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    db: AsyncSession = Depends(get_db)
):
    """Re-send the statement notice to the seller."""
    return await calculator.send_reminder(db, settlement_id, actor_id=current_user["user_id"])


@router.patch("/{settlement_id}/status", response_model=SettlementResponse)
async def update_settlement_status(
    request: SettlementStatusUpdate,
    settlement_id: int = Path(..., description="Settlement ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    db: AsyncSession = Depends(get_db)
):
    """Draft -> PendingPayment -> Paid, or -> Cancelled (releases the items)."""
    return await calculator.update_status(
        db, settlement_id, request.status, actor_id=current_user["user_id"]
    )


@router.patch("/{settlement_id}/adjustments", response_model=SettlementResponse)
async def update_settlement_adjustments(
    request: SettlementAdjustmentsUpdate,
    settlement_id: int = Path(..., description="Settlement ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    calculator: SettlementCalculator = Depends(get_settlement_calculator),
    db: AsyncSession = Depends(get_db)
):
    """Replace the adjustments of a Draft settlement."""
    return await calculator.update_adjustments(
        db, settlement_id, request.adjustments, actor_id=current_user["user_id"]
    )


@seller_router.get("/settlements", response_model=List[SettlementResponse])
async def list_my_settlements(
    current_user: dict = Depends(require_role([UserRole.SELLER])),
    db: AsyncSession = Depends(get_db)
):
    """Settlements paid (or to be paid) to the calling seller."""
    return await SettlementCalculator.list_for_seller(db, current_user["user_id"])
