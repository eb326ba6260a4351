"""
Payment gateway webhook endpoint.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_payment_gateway, get_payment_reconciler
from backend.app.domain.payments.payment_reconciler import PaymentReconciler
from backend.app.schemas.invoice import WebhookAck
from backend.app.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db)
):
    """
    Receive a signed gateway event.

    Unsigned or tampered events get 400. Unrelated, unmatched and duplicate
    events get 200 so the gateway stops redelivering them.
    """
    payload = await request.body()
    event = gateway.verify_event(payload, stripe_signature)

    result = await reconciler.reconcile_event(db, event)
    if result is None:
        return WebhookAck()

    logger.info(
        "Gateway event %s reconciled invoice %s: %s",
        event.get("id"), result.invoice.id, result.outcome.value,
    )
    return WebhookAck(outcome=result.outcome, invoice_id=result.invoice.id)
