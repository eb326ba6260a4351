"""
Payment gateway event parsing.

Several gateway event shapes confirm the same thing, a paid invoice. They
are all reduced to one PaymentSignal so the reconciler sees a single
trigger regardless of which event (or how many) arrived.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_UPDATED = "charge.updated"
INVOICE_PAID = "invoice.paid"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"

PAYMENT_EVENT_TYPES = frozenset({
    CHECKOUT_SESSION_COMPLETED,
    CHARGE_SUCCEEDED,
    CHARGE_UPDATED,
    INVOICE_PAID,
    PAYMENT_INTENT_SUCCEEDED,
})


@dataclass(frozen=True)
class PaymentSignal:
    event_id: Optional[str]
    event_type: str
    invoice_id: Optional[int] = None
    invoice_number: Optional[str] = None
    payment_intent_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    @property
    def has_invoice_reference(self) -> bool:
        return self.invoice_id is not None or self.invoice_number is not None


def _invoice_id(metadata: Dict[str, Any]) -> Optional[int]:
    raw = metadata.get("invoiceId") or metadata.get("invoice_id")
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _intent_id(value: Any) -> Optional[str]:
    # Expanded objects carry the id inside
    if isinstance(value, dict):
        return value.get("id")
    return value


def is_success(event_type: str, obj: Dict[str, Any]) -> bool:
    if event_type == CHECKOUT_SESSION_COMPLETED:
        return obj.get("payment_status") == "paid"
    if event_type == CHARGE_UPDATED:
        return obj.get("status") == "succeeded"
    if event_type == INVOICE_PAID:
        return obj.get("paid", True) is not False
    return event_type in PAYMENT_EVENT_TYPES


def parse_payment_event(event: Dict[str, Any]) -> Optional[PaymentSignal]:
    """
    Reduce a gateway event to a PaymentSignal.

    Returns None for unrelated event types and for events that do not
    (yet) report a successful payment.
    """
    event_type = event.get("type")
    if event_type not in PAYMENT_EVENT_TYPES:
        return None

    obj = (event.get("data") or {}).get("object") or {}
    if not is_success(event_type, obj):
        return None

    metadata = obj.get("metadata") or {}
    if event_type == PAYMENT_INTENT_SUCCEEDED:
        payment_intent_id = obj.get("id")
    else:
        payment_intent_id = _intent_id(obj.get("payment_intent"))

    return PaymentSignal(
        event_id=event.get("id"),
        event_type=event_type,
        invoice_id=_invoice_id(metadata),
        invoice_number=metadata.get("invoiceNumber") or metadata.get("invoice_number"),
        payment_intent_id=payment_intent_id,
        checkout_session_id=obj.get("id") if event_type == CHECKOUT_SESSION_COMPLETED else None,
    )
