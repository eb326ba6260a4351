"""
Invoice Consolidator (Domain Logic).

Turns a winner set into one invoice per winning bidder per auction, and
issues legacy single-item invoices on demand. Both paths are idempotent:
an existing invoice is returned instead of a new one being created.

Every new invoice enqueues an INVOICE_ISSUED notice for its bidder in the
same transaction; announce_issued delivers them once the caller has committed.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    InvariantViolationError,
    ResourceNotFoundError,
    StateConflictError,
)
from backend.app.domain.auction.winner_set import WinnerGroup, WinnerSet
from backend.app.domain.billing.fees import calculate_item_fees, sum_money
from backend.app.domain.billing.numbering import next_invoice_number
from backend.app.domain.clock import as_utc, utcnow
from backend.app.models.auction_item import AuctionItem
from backend.app.models.bid import Bid
from backend.app.models.invoice import Invoice, InvoiceLineItem
from backend.app.models.billing_enums import InvoiceStatus
from backend.app.models.notification import DeliveryStatus, Notification, NotificationKind
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.locking import KeyedLock, auction_key, record_locks
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


def check_invoice_totals(invoice: Invoice) -> None:
    """Raise InvariantViolationError if stored totals disagree with their parts."""
    if invoice.line_items:
        expected_total = sum_money(line.line_total for line in invoice.line_items)
        expected_subtotal = sum_money(line.hammer_amount for line in invoice.line_items)
        for line in invoice.line_items:
            if line.hammer_amount + line.premium_amount + line.tax_amount != line.line_total:
                raise InvariantViolationError(
                    f"Line for item {line.item_id} on {invoice.invoice_number} does not add up",
                    details={"invoice_id": invoice.id, "item_id": line.item_id},
                )
    else:
        expected_subtotal = invoice.bid_amount
        expected_total = sum_money([invoice.bid_amount, invoice.buyers_premium, invoice.tax_amount])

    if invoice.total_amount != expected_total or invoice.subtotal != expected_subtotal:
        raise InvariantViolationError(
            f"Invoice {invoice.invoice_number} totals do not match its lines",
            details={
                "invoice_id": invoice.id,
                "total_amount": str(invoice.total_amount),
                "expected_total": str(expected_total),
            },
        )


class InvoiceConsolidator:

    def __init__(
        self,
        locks: KeyedLock = record_locks,
        notifications: Optional[NotificationService] = None,
    ):
        self.locks = locks
        self.notifications = notifications

    @staticmethod
    async def existing_invoices(db: AsyncSession, auction_id: int) -> List[Invoice]:
        result = await db.execute(
            select(Invoice)
            .where(Invoice.auction_id == auction_id)
            .order_by(Invoice.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

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
    def issued_key(invoice_id: int) -> str:
        return f"invoice-issued:{invoice_id}"

    async def _enqueue_issued(self, db: AsyncSession, invoice: Invoice) -> None:
        await NotificationService.enqueue(
            db,
            invoice.user_id,
            NotificationKind.INVOICE_ISSUED,
            dedupe_key=self.issued_key(invoice.id),
            payload={
                "invoiceId": invoice.id,
                "invoiceNumber": invoice.invoice_number,
                "auctionId": invoice.auction_id,
                "totalAmount": str(invoice.total_amount),
                "currency": invoice.currency,
            },
        )

    async def announce_issued(self, db: AsyncSession, invoices: List[Invoice]) -> int:
        """Deliver the still-pending INVOICE_ISSUED notices of committed invoices."""
        if self.notifications is None or not invoices:
            return 0
        result = await db.execute(
            select(Notification)
            .where(
                Notification.dedupe_key.in_([self.issued_key(invoice.id) for invoice in invoices]),
                Notification.status == DeliveryStatus.PENDING,
            )
            .order_by(Notification.id)
        )
        return await self.notifications.deliver(db, list(result.scalars().all()))

    @staticmethod
    async def _invoiced_item_ids(db: AsyncSession, item_ids: List[int]) -> Set[int]:
        if not item_ids:
            return set()
        lines = await db.execute(
            select(InvoiceLineItem.item_id).where(InvoiceLineItem.item_id.in_(item_ids))
        )
        legacy = await db.execute(
            select(Invoice.item_id).where(Invoice.item_id.in_(item_ids))
        )
        return set(lines.scalars().all()) | set(legacy.scalars().all())

    async def generate_invoices(
        self,
        db: AsyncSession,
        winner_set: WinnerSet,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> List[Invoice]:
        """
        Produce exactly one invoice per winning bidder for the auction.

        Joins the caller's transaction; the caller commits. Bidders that
        already hold an invoice for the auction get that invoice back.
        """
        now = as_utc(now) or utcnow()
        existing: Dict[int, Invoice] = {
            invoice.user_id: invoice
            for invoice in await self.existing_invoices(db, winner_set.auction_id)
        }

        all_item_ids = [
            won.item_id for group in winner_set.winners.values() for won in group.items
        ]
        already_invoiced = await self._invoiced_item_ids(db, all_item_ids)

        invoices: List[Invoice] = []
        created = 0
        for bidder_id in sorted(winner_set.winners):
            if bidder_id in existing:
                invoices.append(existing[bidder_id])
                continue

            group = winner_set.winners[bidder_id]
            invoice = await self._create_consolidated(
                db, winner_set.auction_id, group, already_invoiced, now
            )
            if invoice is not None:
                invoices.append(invoice)
                created += 1

        if created:
            await log_event(
                db,
                AuditAction.INVOICES_GENERATED,
                entity_type="auction",
                entity_id=winner_set.auction_id,
                actor_id=actor_id,
                metadata={"invoices_created": created},
            )
            logger.info("Generated %s invoice(s) for auction %s", created, winner_set.auction_id)

        return sorted(invoices, key=lambda invoice: invoice.id)

    async def _create_consolidated(
        self,
        db: AsyncSession,
        auction_id: int,
        group: WinnerGroup,
        already_invoiced: Set[int],
        now: datetime,
    ) -> Optional[Invoice]:
        items = [won for won in group.items if won.item_id not in already_invoiced]
        if not items:
            return None

        lines = [
            InvoiceLineItem(
                item_id=won.item_id,
                winning_bid_id=won.winning_bid_id,
                hammer_amount=won.hammer,
                premium_amount=won.premium,
                tax_amount=won.tax,
                line_total=won.line_total,
            )
            for won in items
        ]
        invoice = Invoice(
            invoice_number=await next_invoice_number(db, now),
            user_id=group.bidder_id,
            auction_id=auction_id,
            subtotal=sum_money(won.hammer for won in items),
            total_amount=sum_money(won.line_total for won in items),
            currency=settings.currency,
            status=InvoiceStatus.UNPAID,
            created_at=now,
            line_items=lines,
        )
        check_invoice_totals(invoice)

        db.add(invoice)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise InvariantViolationError(
                "Duplicate invoice number or duplicate invoice for bidder/auction",
                details={"auction_id": auction_id, "user_id": group.bidder_id, "error": str(exc.orig)},
            )
        await self._enqueue_issued(db, invoice)
        return invoice

    async def generate_item_invoice(
        self,
        db: AsyncSession,
        item_id: int,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> Invoice:
        """
        Issue (or return) a legacy single-item invoice for a sold item.

        Serialized with consolidated generation for the item's auction, and
        commits on success.
        """
        now = as_utc(now) or utcnow()
        item = await db.get(AuctionItem, item_id)
        if not item:
            raise ResourceNotFoundError("Item", item_id)

        async with self.locks.hold(auction_key(item.auction_id)):
            try:
                invoice = await self._item_invoice(db, item_id, now, actor_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        await self.announce_issued(db, [invoice])
        return await self.get_invoice(db, invoice.id)

    async def _item_invoice(self, db, item_id, now, actor_id) -> Invoice:
        item = (await db.execute(
            select(AuctionItem)
            .where(AuctionItem.id == item_id)
            .execution_options(populate_existing=True)
        )).scalar_one()

        legacy = (await db.execute(
            select(Invoice).where(Invoice.item_id == item_id)
        )).scalar_one_or_none()
        if legacy:
            return legacy

        line_owner = (await db.execute(
            select(Invoice)
            .join(InvoiceLineItem, InvoiceLineItem.invoice_id == Invoice.id)
            .where(InvoiceLineItem.item_id == item_id)
        )).scalar_one_or_none()
        if line_owner:
            return line_owner

        if not item.is_sold or item.sold_price is None or item.winner_id is None:
            raise StateConflictError(
                f"Item {item_id} has not been sold", details={"item_id": item_id}
            )

        winning_bid = (await db.execute(
            select(Bid)
            .where(Bid.item_id == item_id)
            .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
            .limit(1)
        )).scalar_one_or_none()

        fees = calculate_item_fees(item.sold_price, item.buyers_premium_percent, item.tax_percent)
        invoice = Invoice(
            invoice_number=await next_invoice_number(db, now),
            user_id=item.winner_id,
            item_id=item.id,
            winning_bid_id=winning_bid.id if winning_bid else None,
            bid_amount=fees.hammer,
            buyers_premium=fees.premium,
            tax_amount=fees.tax,
            subtotal=fees.hammer,
            total_amount=fees.line_total,
            currency=settings.currency,
            status=InvoiceStatus.UNPAID,
            created_at=now,
        )
        check_invoice_totals(invoice)
        db.add(invoice)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise InvariantViolationError(
                "Duplicate invoice number or item already invoiced",
                details={"item_id": item_id, "error": str(exc.orig)},
            )

        await log_event(
            db,
            AuditAction.ITEM_INVOICE_GENERATED,
            entity_type="invoice",
            entity_id=invoice.id,
            actor_id=actor_id,
            metadata={"item_id": item_id, "invoice_number": invoice.invoice_number},
        )
        await self._enqueue_issued(db, invoice)
        return invoice
