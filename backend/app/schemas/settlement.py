"""
Settlement Schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from backend.app.models.billing_enums import AdjustmentType, SettlementStatus


class AdjustmentCreate(BaseModel):
    """Signed amount; a positive expense or deduction reduces the payout."""
    type: AdjustmentType
    description: str = Field(..., min_length=1, max_length=255)
    amount: Decimal


class SettlementCreate(BaseModel):
    seller_id: int
    auction_id: Optional[int] = None
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)
    adjustments: List[AdjustmentCreate] = []


class BulkSettlementCreate(BaseModel):
    auction_id: int
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100)


class SettlementStatusUpdate(BaseModel):
    status: SettlementStatus


class SettlementAdjustmentsUpdate(BaseModel):
    adjustments: List[AdjustmentCreate]


class BatchStatusUpdate(BaseModel):
    settlement_ids: List[int] = Field(..., min_length=1)
    status: SettlementStatus


class SettlementItemResponse(BaseModel):
    item_id: int
    sold_price: Decimal
    base_price: Decimal
    reserve_price: Optional[Decimal]

    class Config:
        from_attributes = True


class SettlementAdjustmentResponse(BaseModel):
    type: AdjustmentType
    description: str
    amount: Decimal

    class Config:
        from_attributes = True


class SettlementResponse(BaseModel):
    id: int
    reference: str
    seller_id: int
    auction_id: Optional[int]
    commission_rate: Decimal
    total_sales: Decimal
    commission: Decimal
    adjustments_total: Decimal
    net_payout: Decimal
    currency: str
    status: SettlementStatus
    generated_at: datetime
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    items: List[SettlementItemResponse] = []
    adjustments: List[SettlementAdjustmentResponse] = []

    class Config:
        from_attributes = True


class BatchOutcomeResponse(BaseModel):
    settlement_id: int
    ok: bool
    status: Optional[SettlementStatus] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class UnsettledItemResponse(BaseModel):
    id: int
    auction_id: int
    seller_id: Optional[int]
    name: str
    lot_number: Optional[str]
    base_price: Decimal
    reserve_price: Optional[Decimal]
    sold_price: Optional[Decimal]
    winner_id: Optional[int]

    class Config:
        from_attributes = True


class UnsoldLotResponse(BaseModel):
    """reason is no_bids, below_reserve or unsold."""
    item_id: int
    auction_id: int
    name: str
    lot_number: Optional[str]
    base_price: Decimal
    reserve_price: Optional[Decimal]
    current_bid: Optional[Decimal]
    reason: str

    class Config:
        from_attributes = True


class SettlementDetailResponse(SettlementResponse):
    unsold_items: List[UnsoldLotResponse] = []
