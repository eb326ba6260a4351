"""
Payment Reconciler (Domain Logic).

Applies the Unpaid -> Paid transition exactly once per invoice, no matter how
many equivalent gateway events arrive or in what order. The transition, the
sold-item re-assertion, the outbox rows and the audit entry commit together;
receipts, notices and real-time events fan out after the commit and never
roll it back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ExternalServiceError, ResourceNotFoundError, StateConflictError
from backend.app.domain.clock import as_utc, utcnow
from backend.app.domain.payments.payment_events import PaymentSignal, parse_payment_event
from backend.app.domain.state_machine import INVOICE_TRANSITIONS, ensure_transition
from backend.app.models.auction_item import AuctionItem
from backend.app.models.billing_enums import InvoiceStatus, ReconcileOutcome
from backend.app.models.invoice import Invoice
from backend.app.models.notification import Notification, NotificationKind
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.collaborators import DocumentGenerator, Publisher
from backend.app.services.fanout import SideEffect
from backend.app.services.locking import KeyedLock, compare_and_set, invoice_key, record_locks
from backend.app.services.notification_service import NotificationService
from backend.app.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

INVOICE_PAID_EVENT = "invoice-paid"
ADMIN_CHANNEL = "admin-notifications"
RECEIPT_DOCUMENT = "invoice-receipt"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    invoice: Invoice

    @property
    def applied(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED


@dataclass
class PaymentSession:
    invoice_id: int
    payment_intent_id: str
    client_secret: Optional[str]
    payment_link: Optional[str]


def invoice_snapshot(invoice: Invoice) -> Dict[str, Any]:
    snapshot = {
        "invoice_number": invoice.invoice_number,
        "user_id": invoice.user_id,
        "auction_id": invoice.auction_id,
        "status": invoice.status.value,
        "currency": invoice.currency,
        "subtotal": str(invoice.subtotal),
        "total_amount": str(invoice.total_amount),
        "paid_at": invoice.paid_at.isoformat() if invoice.paid_at else None,
    }
    if invoice.is_legacy:
        snapshot["lines"] = [{
            "item_id": invoice.item_id,
            "hammer": str(invoice.bid_amount),
            "premium": str(invoice.buyers_premium),
            "tax": str(invoice.tax_amount),
            "line_total": str(invoice.total_amount),
        }]
    else:
        snapshot["lines"] = [
            {
                "item_id": line.item_id,
                "hammer": str(line.hammer_amount),
                "premium": str(line.premium_amount),
                "tax": str(line.tax_amount),
                "line_total": str(line.line_total),
            }
            for line in invoice.line_items
        ]
    return snapshot


class PaymentReconciler:

    def __init__(
        self,
        publisher: Publisher,
        notifications: NotificationService,
        documents: DocumentGenerator,
        gateway: Optional[PaymentGateway] = None,
        locks: KeyedLock = record_locks,
    ):
        self.publisher = publisher
        self.notifications = notifications
        self.documents = documents
        self.gateway = gateway
        self.locks = locks

    @staticmethod
    async def _load(db: AsyncSession, invoice_id: int) -> Invoice:
        invoice = (await db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not invoice:
            raise ResourceNotFoundError("Invoice", invoice_id)
        return invoice

    @staticmethod
    async def get_invoice(db: AsyncSession, invoice_id: int) -> Invoice:
        invoice = (await db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not invoice:
            raise ResourceNotFoundError("Invoice", invoice_id)
        return invoice

    @staticmethod
    async def resolve_invoice_id(
        db: AsyncSession,
        invoice_id: Optional[int] = None,
        invoice_number: Optional[str] = None,
    ) -> int:
        if invoice_id is not None:
            return invoice_id
        if invoice_number:
            found = (await db.execute(
                select(Invoice.id).where(Invoice.invoice_number == invoice_number)
            )).scalar_one_or_none()
            if found is not None:
                return found
        raise ResourceNotFoundError("Invoice", invoice_number)

    async def reconcile(
        self,
        db: AsyncSession,
        invoice_id: Optional[int] = None,
        invoice_number: Optional[str] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
        payment_intent_id: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Mark an invoice Paid, once.

        Returns AlreadyApplied (and does nothing) if the invoice is already
        Paid. A Cancelled invoice raises InvalidTransitionError.
        """
        invoice_id = await self.resolve_invoice_id(db, invoice_id, invoice_number)
        now = as_utc(now) or utcnow()

        async with self.locks.hold(invoice_key(invoice_id)):
            try:
                applied, notices = await self._apply(
                    db, invoice_id, now, actor_id, payment_intent_id, checkout_session_id
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        invoice = await self.get_invoice(db, invoice_id)

        if not applied:
            logger.info("Invoice %s already paid, duplicate confirmation ignored", invoice.invoice_number)
            return ReconcileResult(outcome=ReconcileOutcome.ALREADY_APPLIED, invoice=invoice)

        logger.info("Invoice %s marked paid", invoice.invoice_number)
        await self._fan_out(db, invoice, notices)
        return ReconcileResult(outcome=ReconcileOutcome.APPLIED, invoice=invoice)

    async def _apply(self, db, invoice_id, now, actor_id, payment_intent_id, checkout_session_id):
        invoice = await self._load(db, invoice_id)
        if invoice.status == InvoiceStatus.PAID:
            return False, []
        ensure_transition("Invoice", INVOICE_TRANSITIONS, invoice.status, InvoiceStatus.PAID)

        values: Dict[str, Any] = {"status": InvoiceStatus.PAID, "paid_at": now}
        if payment_intent_id and not invoice.payment_intent_id:
            values["payment_intent_id"] = payment_intent_id
        if checkout_session_id and not invoice.checkout_session_id:
            values["checkout_session_id"] = checkout_session_id

        if not await compare_and_set(db, Invoice, invoice_id, InvoiceStatus.UNPAID, values):
            current = await self._load(db, invoice_id)
            if current.status == InvoiceStatus.PAID:
                return False, []
            raise StateConflictError(
                f"Invoice {invoice_id} changed concurrently",
                details={"invoice_id": invoice_id, "status": current.status.value},
            )

        await self._assert_items_sold(db, invoice)

        notices: List[Notification] = []
        payload = {
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "total_amount": str(invoice.total_amount),
            "currency": invoice.currency,
        }
        receipt = await NotificationService.enqueue(
            db,
            user_id=invoice.user_id,
            kind=NotificationKind.PAYMENT_RECEIPT,
            dedupe_key=f"invoice-paid:{invoice.id}:{NotificationKind.PAYMENT_RECEIPT.value}:{invoice.user_id}",
            payload=payload,
        )
        notices.append(receipt)
        for admin_id in await NotificationService.admin_ids(db):
            notices.append(await NotificationService.enqueue(
                db,
                user_id=admin_id,
                kind=NotificationKind.ADMIN_INVOICE_PAID,
                dedupe_key=f"invoice-paid:{invoice.id}:{NotificationKind.ADMIN_INVOICE_PAID.value}:{admin_id}",
                payload={**payload, "buyer_id": invoice.user_id},
            ))

        await log_event(
            db,
            AuditAction.INVOICE_PAID,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={"invoice_number": invoice.invoice_number, "payment_intent_id": payment_intent_id},
        )
        return True, [notice for notice in notices if notice is not None]

    @staticmethod
    async def _assert_items_sold(db: AsyncSession, invoice: Invoice) -> None:
        """Paid lines make their items settleable at the invoiced hammer price."""
        if invoice.is_legacy:
            sold = [(invoice.item_id, invoice.bid_amount)]
        else:
            sold = [(line.item_id, line.hammer_amount) for line in invoice.line_items]

        for item_id, hammer in sold:
            await db.execute(
                update(AuctionItem)
                .where(AuctionItem.id == item_id)
                .values(is_sold=True, sold_price=hammer, winner_id=invoice.user_id)
                .execution_options(synchronize_session=False)
            )

    async def _fan_out(self, db: AsyncSession, invoice: Invoice, notices: List[Notification]) -> None:
        event_payload = {
            "invoiceId": invoice.id,
            "invoiceNumber": invoice.invoice_number,
            "totalAmount": str(invoice.total_amount),
            "userId": invoice.user_id,
        }
        snapshot = invoice_snapshot(invoice)

        effects = [self.notifications.delivery_effect(notice) for notice in notices]
        effects.append(SideEffect(
            task_name="realtime_publish",
            run=lambda: self.publisher.publish(f"user-{invoice.user_id}", INVOICE_PAID_EVENT, event_payload),
            payload={"invoice_id": invoice.id, "channel": "user"},
            dead_letter=False,
        ))
        effects.append(SideEffect(
            task_name="realtime_publish",
            run=lambda: self.publisher.publish(ADMIN_CHANNEL, INVOICE_PAID_EVENT, event_payload),
            payload={"invoice_id": invoice.id, "channel": ADMIN_CHANNEL},
            dead_letter=False,
        ))
        effects.append(SideEffect(
            task_name="receipt_document",
            run=lambda: self.documents.render(RECEIPT_DOCUMENT, snapshot),
            payload={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
        ))
        await self.notifications.dispatcher.run(db, effects)

    async def reconcile_event(self, db: AsyncSession, event: Dict[str, Any]) -> Optional[ReconcileResult]:
        """
        Reconcile a verified gateway event.

        Returns None when the event is not a payment confirmation or cannot
        be tied to an invoice. Gateway lookup failures propagate so the
        gateway redelivers the event.
        """
        signal = parse_payment_event(event)
        if signal is None:
            logger.debug("Ignoring gateway event %s (%s)", event.get("id"), event.get("type"))
            return None

        invoice_id = await self._correlate(db, signal)
        if invoice_id is None:
            logger.warning(
                "Payment event %s (%s) matches no invoice", signal.event_id, signal.event_type
            )
            return None

        try:
            return await self.reconcile(
                db,
                invoice_id=invoice_id,
                payment_intent_id=signal.payment_intent_id,
                checkout_session_id=signal.checkout_session_id,
            )
        except StateConflictError as exc:
            logger.warning(
                "Payment event %s for invoice %s not applied: %s",
                signal.event_id, invoice_id, exc.message,
            )
            return None

    async def _correlate(self, db: AsyncSession, signal: PaymentSignal) -> Optional[int]:
        invoice_id, invoice_number = signal.invoice_id, signal.invoice_number

        if not signal.has_invoice_reference and signal.payment_intent_id and self.gateway:
            intent = await self.gateway.retrieve_payment_intent(signal.payment_intent_id)
            if intent.get("status") != "succeeded":
                logger.info(
                    "Payment intent %s is %s, not reconciling", signal.payment_intent_id, intent.get("status")
                )
                return None
            metadata = intent.get("metadata") or {}
            raw_id = metadata.get("invoiceId")
            invoice_id = int(raw_id) if raw_id and str(raw_id).isdigit() else None
            invoice_number = metadata.get("invoiceNumber")

        if invoice_id is not None:
            exists = await db.execute(select(Invoice.id).where(Invoice.id == invoice_id))
            if exists.scalar_one_or_none() is not None:
                return invoice_id
        if invoice_number:
            found = await db.execute(select(Invoice.id).where(Invoice.invoice_number == invoice_number))
            found_id = found.scalar_one_or_none()
            if found_id is not None:
                return found_id

        for column, value in (
            (Invoice.payment_intent_id, signal.payment_intent_id),
            (Invoice.checkout_session_id, signal.checkout_session_id),
        ):
            if value:
                found = await db.execute(select(Invoice.id).where(column == value))
                found_id = found.scalar_one_or_none()
                if found_id is not None:
                    return found_id
        return None

    async def open_payment(
        self,
        db: AsyncSession,
        invoice_id: int,
        actor_id: Optional[int] = None,
    ) -> PaymentSession:
        """
        Open (or reopen) gateway payment for an Unpaid invoice.

        The first call creates a payment intent and a hosted payment link,
        both tagged with the invoice id and number, and stores their
        references on the invoice. Later calls re-query the stored intent
        instead of creating another one.
        """
        if self.gateway is None:
            raise ExternalServiceError("payment_gateway", "no payment gateway configured")

        async with self.locks.hold(invoice_key(invoice_id)):
            try:
                invoice = await self._load(db, invoice_id)
                if invoice.status != InvoiceStatus.UNPAID:
                    raise StateConflictError(
                        f"Invoice {invoice_id} is {invoice.status.value}, not payable",
                        details={"invoice_id": invoice_id, "status": invoice.status.value},
                    )

                metadata = {"invoiceId": str(invoice.id), "invoiceNumber": invoice.invoice_number}
                if invoice.payment_intent_id:
                    intent = await self.gateway.retrieve_payment_intent(invoice.payment_intent_id)
                else:
                    intent = await self.gateway.create_payment_intent(
                        invoice.total_amount,
                        invoice.currency,
                        metadata,
                        description=f"Payment for invoice {invoice.invoice_number}",
                    )
                    invoice.payment_intent_id = intent["id"]

                if not invoice.payment_link:
                    link = await self.gateway.create_payment_link(
                        invoice.total_amount,
                        invoice.currency,
                        metadata,
                        name=f"Invoice {invoice.invoice_number}",
                        return_url=f"{settings.payment_return_url}/{invoice.id}?success=true",
                    )
                    invoice.payment_link = link["url"]

                await log_event(
                    db,
                    AuditAction.PAYMENT_OPENED,
                    entity_type="invoice",
                    entity_id=invoice_id,
                    actor_id=actor_id,
                    metadata={"invoice_number": invoice.invoice_number, "payment_intent_id": invoice.payment_intent_id},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return PaymentSession(
            invoice_id=invoice_id,
            payment_intent_id=invoice.payment_intent_id,
            client_secret=intent.get("client_secret"),
            payment_link=invoice.payment_link,
        )

    async def cancel_invoice(
        self,
        db: AsyncSession,
        invoice_id: int,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> Invoice:
        """Administrative Unpaid -> Cancelled."""
        now = as_utc(now) or utcnow()
        async with self.locks.hold(invoice_key(invoice_id)):
            try:
                invoice = await self._load(db, invoice_id)
                ensure_transition("Invoice", INVOICE_TRANSITIONS, invoice.status, InvoiceStatus.CANCELLED)
                if not await compare_and_set(
                    db, Invoice, invoice_id, InvoiceStatus.UNPAID,
                    {"status": InvoiceStatus.CANCELLED, "cancelled_at": now},
                ):
                    raise StateConflictError(
                        f"Invoice {invoice_id} changed concurrently", details={"invoice_id": invoice_id}
                    )
                await log_event(
                    db,
                    AuditAction.INVOICE_CANCELLED,
                    entity_type="invoice",
                    entity_id=invoice_id,
                    actor_id=actor_id,
                    metadata={"invoice_number": invoice.invoice_number},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info("Invoice %s cancelled", invoice_id)
        return await self.get_invoice(db, invoice_id)
