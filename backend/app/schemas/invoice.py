"""
Invoice and payment Schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from backend.app.models.billing_enums import InvoiceStatus, ReconcileOutcome


class InvoiceLineItemResponse(BaseModel):
    item_id: int
    winning_bid_id: Optional[int]
    hammer_amount: Decimal
    premium_amount: Decimal
    tax_amount: Decimal
    line_total: Decimal

    class Config:
        from_attributes = True


class InvoiceResponse(BaseModel):
    """Consolidated invoices carry line_items; legacy ones carry item_id and flat fees."""
    id: int
    invoice_number: str
    user_id: int
    auction_id: Optional[int]
    item_id: Optional[int]
    bid_amount: Optional[Decimal]
    buyers_premium: Optional[Decimal]
    tax_amount: Optional[Decimal]
    subtotal: Decimal
    total_amount: Decimal
    currency: str
    status: InvoiceStatus
    payment_link: Optional[str]
    created_at: datetime
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    line_items: List[InvoiceLineItemResponse] = []

    class Config:
        from_attributes = True


class ReconcileResponse(BaseModel):
    outcome: ReconcileOutcome
    invoice: InvoiceResponse


class WebhookAck(BaseModel):
    """Gateway acknowledgement; ignored events are still a 200."""
    received: bool = True
    outcome: Optional[ReconcileOutcome] = None
    invoice_id: Optional[int] = None


class PaymentSessionResponse(BaseModel):
    """What a buyer's client needs to pay: the intent's client secret and/or the hosted link."""
    invoice_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    payment_link: Optional[str] = None
