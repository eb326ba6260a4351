"""
Invoice API Endpoints.

Detail, gateway payment opening, manual payment confirmation and
administrative cancellation.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, Path
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from backend.app.db.session import get_db
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_current_user, get_payment_reconciler
from backend.app.core.exceptions import StateConflictError
from backend.app.core.guards import ownership_guard, require_role
from backend.app.domain.payments.payment_reconciler import PaymentReconciler
from backend.app.schemas.invoice import InvoiceResponse, PaymentSessionResponse, ReconcileResponse

router = APIRouter(prefix="/invoices", tags=["Invoices"])
admin_router = APIRouter(prefix="/admin/invoices", tags=["Admin - Invoices"])


class MarkPaidRequest(BaseModel):
    """Non-admin callers must name the gateway payment that settled the invoice."""
    payment_intent_id: Optional[str] = None


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Invoice detail, visible to its owner and to admins."""
    invoice = await PaymentReconciler.get_invoice(db, invoice_id)
    ownership_guard.enforce(invoice.user_id, current_user, "invoice")
    return invoice


@router.post("/{invoice_id}/payment", response_model=PaymentSessionResponse)
async def open_invoice_payment(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db)
):
    """Start paying an Unpaid invoice: returns the intent's client secret and a hosted payment link."""
    invoice = await PaymentReconciler.get_invoice(db, invoice_id)
    ownership_guard.enforce(invoice.user_id, current_user, "invoice")

    session = await reconciler.open_payment(db, invoice_id, actor_id=current_user["user_id"])
    return PaymentSessionResponse(**asdict(session))


@router.post("/{invoice_id}/mark-paid", response_model=ReconcileResponse)
async def mark_invoice_paid(
    invoice_id: int = Path(..., description="Invoice ID"),
    request: Optional[MarkPaidRequest] = None,
    current_user: dict = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db)
):
    """
    Confirm payment of an invoice.

    Admins may confirm directly. Owners must pass a payment intent, which is
    re-queried at the gateway before the transition is applied.
    """
    payment_intent_id = request.payment_intent_id if request else None
    invoice = await PaymentReconciler.get_invoice(db, invoice_id)
    ownership_guard.enforce(invoice.user_id, current_user, "invoice")

    if current_user.get("role") != UserRole.ADMIN.value:
        await _verify_payment(reconciler, invoice, payment_intent_id)

    result = await reconciler.reconcile(
        db,
        invoice_id=invoice_id,
        actor_id=current_user["user_id"],
        payment_intent_id=payment_intent_id,
    )
    return ReconcileResponse(outcome=result.outcome, invoice=InvoiceResponse.model_validate(result.invoice))


async def _verify_payment(reconciler: PaymentReconciler, invoice, payment_intent_id: Optional[str]):
    if not payment_intent_id or reconciler.gateway is None:
        raise StateConflictError(
            "Payment has not been confirmed by the gateway",
            details={"invoice_id": invoice.id},
        )
    intent = await reconciler.gateway.retrieve_payment_intent(payment_intent_id)
    metadata = intent.get("metadata") or {}
    matches = (
        str(metadata.get("invoiceId")) == str(invoice.id)
        or metadata.get("invoiceNumber") == invoice.invoice_number
        or invoice.payment_intent_id == payment_intent_id
    )
    if intent.get("status") != "succeeded" or not matches:
        raise StateConflictError(
            "Payment has not been confirmed by the gateway",
            details={"invoice_id": invoice.id, "payment_intent_status": intent.get("status")},
        )


@admin_router.post("/{invoice_id}/cancel", response_model=InvoiceResponse)
async def cancel_invoice(
    invoice_id: int = Path(..., description="Invoice ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    db: AsyncSession = Depends(get_db)
):
    """Cancel an unpaid invoice."""
    return await reconciler.cancel_invoice(db, invoice_id, actor_id=current_user["user_id"])
