"""
Settlement Calculator (Domain Logic).

Aggregates a seller's sold, paid-for, not-yet-settled items into a payout
statement:

    total_sales = sum(sold_price)
    commission  = round2(total_sales * commission_rate%)
    net_payout  = total_sales - commission - sum(adjustments)

An item is claimed by a settlement through a conditional UPDATE on
auction_items.settlement_id, so no item can sit in two live settlements.
Cancelling a settlement releases its items.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import (
    AppException,
    InvariantViolationError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationFailedError,
)
from backend.app.domain.billing.money import HUNDRED, is_currency_value, percent_of, to_money, ZERO
from backend.app.domain.billing.fees import sum_money
from backend.app.domain.billing.numbering import next_settlement_reference
from backend.app.domain.clock import as_utc, utcnow
from backend.app.domain.state_machine import SETTLEMENT_TRANSITIONS, ensure_transition
from backend.app.models.auction import Auction
from backend.app.models.auction_item import AuctionItem
from backend.app.models.billing_enums import AdjustmentType, InvoiceStatus, SettlementStatus
from backend.app.models.invoice import Invoice, InvoiceLineItem
from backend.app.models.notification import Notification, NotificationKind
from backend.app.models.settlement import Settlement, SettlementAdjustment, SettlementItem
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.collaborators import DocumentGenerator
from backend.app.services.fanout import SideEffect
from backend.app.services.locking import (
    KeyedLock,
    compare_and_set,
    record_locks,
    seller_settlement_key,
    settlement_key,
)
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

SETTLEMENT_STATEMENT_DOCUMENT = "settlement-statement"


@dataclass(frozen=True)
class AdjustmentInput:
    type: AdjustmentType
    description: str
    amount: Decimal


@dataclass
class BatchOutcome:
    settlement_id: int
    ok: bool
    status: Optional[SettlementStatus] = None
    error: Optional[str] = None


NO_BIDS = "no_bids"
BELOW_RESERVE = "below_reserve"
UNSOLD = "unsold"


@dataclass
class UnsoldLot:
    item_id: int
    auction_id: int
    name: str
    lot_number: Optional[str]
    base_price: Decimal
    reserve_price: Optional[Decimal]
    current_bid: Optional[Decimal]
    reason: str


def unsold_reason(item: AuctionItem) -> str:
    """Why a lot went unsold: nobody bid, or the top bid missed the reserve."""
    if not item.current_bid:
        return NO_BIDS
    if item.reserve_price is not None and item.current_bid < item.reserve_price:
        return BELOW_RESERVE
    return UNSOLD


def validate_commission_rate(rate: Any) -> Decimal:
    if not is_currency_value(rate) or Decimal(str(rate)) > HUNDRED:
        raise ValidationFailedError(
            "Commission rate must be between 0 and 100 with at most 2 decimals",
            details={"commission_rate": str(rate)},
        )
    return Decimal(str(rate))


def normalize_adjustments(adjustments: Optional[Iterable[Any]]) -> List[AdjustmentInput]:
    """Accept AdjustmentInput, dicts or objects with type/description/amount."""
    normalized = []
    for raw in adjustments or []:
        if isinstance(raw, dict):
            kind, description, amount = raw.get("type"), raw.get("description"), raw.get("amount")
        else:
            kind, description, amount = raw.type, raw.description, raw.amount

        try:
            kind = AdjustmentType(kind)
        except ValueError:
            raise ValidationFailedError(
                f"Unknown adjustment type {kind}", details={"type": str(kind)}
            )
        if amount is None or not is_currency_value(amount, signed=True):
            raise ValidationFailedError(
                "Adjustment amount must be a currency value", details={"amount": str(amount)}
            )
        if not description:
            raise ValidationFailedError("Adjustment description is required")
        normalized.append(AdjustmentInput(type=kind, description=description, amount=to_money(amount)))
    return normalized


def paid_for_predicate():
    """
    Items whose consolidated line or legacy invoice is Paid.

    Close marks winners sold, but only a completed payment makes an item
    eligible for a seller payout.
    """
    line_paid = (
        select(InvoiceLineItem.id)
        .join(Invoice, Invoice.id == InvoiceLineItem.invoice_id)
        .where(InvoiceLineItem.item_id == AuctionItem.id, Invoice.status == InvoiceStatus.PAID)
        .exists()
    )
    legacy_paid = (
        select(Invoice.id)
        .where(Invoice.item_id == AuctionItem.id, Invoice.status == InvoiceStatus.PAID)
        .exists()
    )
    return or_(line_paid, legacy_paid)


def settlement_snapshot(settlement: Settlement) -> Dict[str, Any]:
    return {
        "reference": settlement.reference,
        "seller_id": settlement.seller_id,
        "auction_id": settlement.auction_id,
        "status": settlement.status.value,
        "currency": settlement.currency,
        "commission_rate": str(settlement.commission_rate),
        "total_sales": str(settlement.total_sales),
        "commission": str(settlement.commission),
        "adjustments_total": str(settlement.adjustments_total),
        "net_payout": str(settlement.net_payout),
        "items": [
            {"item_id": item.item_id, "sold_price": str(item.sold_price)}
            for item in settlement.items
        ],
        "adjustments": [
            {"type": adj.type.value, "description": adj.description, "amount": str(adj.amount)}
            for adj in settlement.adjustments
        ],
    }


class SettlementCalculator:

    def __init__(
        self,
        notifications: Optional[NotificationService] = None,
        documents: Optional[DocumentGenerator] = None,
        locks: KeyedLock = record_locks,
    ):
        self.notifications = notifications
        self.documents = documents
        self.locks = locks

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    async def unsettled_items(
        db: AsyncSession,
        auction_id: Optional[int] = None,
        seller_id: Optional[int] = None,
    ) -> List[AuctionItem]:
        """Sold, paid-for items not held by any live settlement."""
        stmt = select(AuctionItem).where(
            AuctionItem.is_sold == True,
            AuctionItem.settlement_id.is_(None),
            paid_for_predicate(),
        )
        if auction_id is not None:
            stmt = stmt.where(AuctionItem.auction_id == auction_id)
        if seller_id is not None:
            stmt = stmt.where(AuctionItem.seller_id == seller_id)
        result = await db.execute(
            stmt.order_by(AuctionItem.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_settlement(db: AsyncSession, settlement_id: int) -> Settlement:
        settlement = (await db.execute(
            select(Settlement)
            .where(Settlement.id == settlement_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not settlement:
            raise ResourceNotFoundError("Settlement", settlement_id)
        return settlement

    @staticmethod
    async def list_for_seller(db: AsyncSession, seller_id: int) -> List[Settlement]:
        result = await db.execute(
            select(Settlement)
            .where(Settlement.seller_id == seller_id)
            .order_by(Settlement.generated_at.desc(), Settlement.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_settlements(
        db: AsyncSession,
        status: Optional[SettlementStatus] = None,
        seller_id: Optional[int] = None,
        auction_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Settlement]:
        """Admin listing, newest first."""
        stmt = select(Settlement)
        if status is not None:
            stmt = stmt.where(Settlement.status == SettlementStatus(status))
        if seller_id is not None:
            stmt = stmt.where(Settlement.seller_id == seller_id)
        if auction_id is not None:
            stmt = stmt.where(Settlement.auction_id == auction_id)
        result = await db.execute(
            stmt.order_by(Settlement.generated_at.desc(), Settlement.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def unsold_lots(db: AsyncSession, settlement: Settlement) -> List[UnsoldLot]:
        """
        The seller's lots that did not sell in the auctions a settlement covers.

        A settlement without auction_id covers every auction its items came from.
        """
        if settlement.auction_id is not None:
            auction_ids = [settlement.auction_id]
        else:
            result = await db.execute(
                select(AuctionItem.auction_id)
                .where(AuctionItem.id.in_([line.item_id for line in settlement.items]))
                .distinct()
            )
            auction_ids = list(result.scalars().all())
        if not auction_ids:
            return []

        result = await db.execute(
            select(AuctionItem)
            .where(
                AuctionItem.seller_id == settlement.seller_id,
                AuctionItem.auction_id.in_(auction_ids),
                AuctionItem.is_sold == False,
            )
            .order_by(AuctionItem.id)
            .execution_options(populate_existing=True)
        )
        return [
            UnsoldLot(
                item_id=item.id,
                auction_id=item.auction_id,
                name=item.name,
                lot_number=item.lot_number,
                base_price=item.base_price,
                reserve_price=item.reserve_price,
                current_bid=item.current_bid,
                reason=unsold_reason(item),
            )
            for item in result.scalars().all()
        ]

    # ------------------------------------------------------------------
    # Calculation
    # ------------------------------------------------------------------

    async def calculate_settlement(
        self,
        db: AsyncSession,
        seller_id: int,
        auction_id: Optional[int] = None,
        commission_rate: Any = None,
        adjustments: Optional[Iterable[Any]] = None,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> Settlement:
        """
        Create a Draft settlement from the seller's eligible items.

        auction_id None settles eligible items across all auctions.
        Raises StateConflictError when nothing is left to settle.
        """
        rate = validate_commission_rate(
            settings.default_commission_rate if commission_rate is None else commission_rate
        )
        adjustment_inputs = normalize_adjustments(adjustments)
        now = as_utc(now) or utcnow()

        async with self.locks.hold(seller_settlement_key(seller_id)):
            try:
                settlement = await self._create(
                    db, seller_id, auction_id, rate, adjustment_inputs, now, actor_id
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "Settlement %s created for seller %s: %s item(s), net %s",
            settlement.reference, seller_id, len(settlement.items), settlement.net_payout,
        )
        return await self.get_settlement(db, settlement.id)

    async def _create(self, db, seller_id, auction_id, rate, adjustment_inputs, now, actor_id):
        items = await self.unsettled_items(db, auction_id=auction_id, seller_id=seller_id)
        if not items:
            raise StateConflictError(
                f"No unsettled sold items for seller {seller_id}",
                details={"seller_id": seller_id, "auction_id": auction_id},
            )

        total_sales = sum_money(item.sold_price for item in items)
        if total_sales < ZERO:
            raise InvariantViolationError(
                "Settlement total sales computed negative",
                details={"seller_id": seller_id, "total_sales": str(total_sales)},
            )
        commission = to_money(percent_of(total_sales, rate))
        adjustments_total = sum_money(adj.amount for adj in adjustment_inputs)

        settlement = Settlement(
            reference=await next_settlement_reference(db, now),
            seller_id=seller_id,
            auction_id=auction_id,
            commission_rate=rate,
            total_sales=total_sales,
            commission=commission,
            adjustments_total=adjustments_total,
            net_payout=total_sales - commission - adjustments_total,
            currency=settings.currency,
            status=SettlementStatus.DRAFT,
            generated_at=now,
            items=[
                SettlementItem(
                    item_id=item.id,
                    sold_price=item.sold_price,
                    base_price=item.base_price,
                    reserve_price=item.reserve_price,
                )
                for item in items
            ],
            adjustments=[
                SettlementAdjustment(type=adj.type, description=adj.description, amount=adj.amount)
                for adj in adjustment_inputs
            ],
        )
        db.add(settlement)
        await db.flush()

        item_ids = [item.id for item in items]
        claimed = await db.execute(
            update(AuctionItem)
            .where(AuctionItem.id.in_(item_ids), AuctionItem.settlement_id.is_(None))
            .values(settlement_id=settlement.id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != len(item_ids):
            raise StateConflictError(
                "Items were settled concurrently, recalculate",
                details={"seller_id": seller_id, "expected": len(item_ids), "claimed": claimed.rowcount},
            )

        await log_event(
            db,
            AuditAction.SETTLEMENT_CREATED,
            entity_type="settlement",
            entity_id=settlement.id,
            actor_id=actor_id,
            metadata={"reference": settlement.reference, "items": item_ids},
        )
        return settlement

    async def bulk_calculate(
        self,
        db: AsyncSession,
        auction_id: int,
        commission_rate: Any = None,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> List[Settlement]:
        """One settlement per seller holding unsettled sold items in the auction."""
        if await db.get(Auction, auction_id) is None:
            raise ResourceNotFoundError("Auction", auction_id)

        result = await db.execute(
            select(AuctionItem.seller_id)
            .where(
                AuctionItem.auction_id == auction_id,
                AuctionItem.is_sold == True,
                AuctionItem.settlement_id.is_(None),
                AuctionItem.seller_id.is_not(None),
                paid_for_predicate(),
            )
            .distinct()
            .order_by(AuctionItem.seller_id)
        )
        seller_ids = list(result.scalars().all())

        settlements = []
        for seller_id in seller_ids:
            try:
                settlements.append(await self.calculate_settlement(
                    db, seller_id, auction_id, commission_rate, now=now, actor_id=actor_id
                ))
            except StateConflictError as exc:
                logger.info("Skipping seller %s in bulk settlement: %s", seller_id, exc.message)
        return settlements

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def update_status(
        self,
        db: AsyncSession,
        settlement_id: int,
        status: SettlementStatus,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> Settlement:
        """Apply one allowed status transition; Cancelled releases the items."""
        status = SettlementStatus(status)
        now = as_utc(now) or utcnow()

        async with self.locks.hold(settlement_key(settlement_id)):
            try:
                notice = await self._transition(db, settlement_id, status, now, actor_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        settlement = await self.get_settlement(db, settlement_id)
        logger.info("Settlement %s moved to %s", settlement.reference, status.value)
        await self._fan_out(db, settlement, notice)
        return settlement

    async def _transition(self, db, settlement_id, status, now, actor_id) -> Optional[Notification]:
        settlement = await self.get_settlement(db, settlement_id)
        previous = settlement.status
        ensure_transition("Settlement", SETTLEMENT_TRANSITIONS, previous, status)

        values: Dict[str, Any] = {"status": status, "updated_at": now}
        if status == SettlementStatus.PAID:
            values["paid_at"] = now
        elif status == SettlementStatus.CANCELLED:
            values["cancelled_at"] = now

        if not await compare_and_set(db, Settlement, settlement_id, previous, values):
            raise StateConflictError(
                f"Settlement {settlement_id} changed concurrently",
                details={"settlement_id": settlement_id, "expected_status": previous.value},
            )

        if status == SettlementStatus.CANCELLED:
            released = await db.execute(
                update(AuctionItem)
                .where(AuctionItem.settlement_id == settlement_id)
                .values(settlement_id=None)
                .execution_options(synchronize_session=False)
            )
            logger.info("Settlement %s cancelled, released %s item(s)", settlement_id, released.rowcount)

        await log_event(
            db,
            AuditAction.SETTLEMENT_STATUS_CHANGED,
            entity_type="settlement",
            entity_id=settlement_id,
            actor_id=actor_id,
            metadata={"from": previous.value, "to": status.value},
        )

        kind = {
            SettlementStatus.PENDING_PAYMENT: NotificationKind.SETTLEMENT_STATEMENT,
            SettlementStatus.PAID: NotificationKind.SETTLEMENT_PAID,
        }.get(status)
        if kind is None:
            return None
        return await NotificationService.enqueue(
            db,
            user_id=settlement.seller_id,
            kind=kind,
            dedupe_key=f"settlement:{settlement_id}:{kind.value}",
            payload={
                "settlement_id": settlement_id,
                "reference": settlement.reference,
                "net_payout": str(settlement.net_payout),
                "currency": settlement.currency,
            },
        )

    async def _fan_out(
        self, db: AsyncSession, settlement: Settlement, notice: Optional[Notification]
    ) -> None:
        if self.notifications is None:
            return
        effects: List[SideEffect] = []
        if notice is not None:
            effects.append(self.notifications.delivery_effect(notice))
        if (
            self.documents is not None
            and notice is not None
            and notice.kind == NotificationKind.SETTLEMENT_STATEMENT
        ):
            snapshot = settlement_snapshot(settlement)
            effects.append(SideEffect(
                task_name="settlement_statement_document",
                run=lambda: self.documents.render(SETTLEMENT_STATEMENT_DOCUMENT, snapshot),
                payload={"settlement_id": settlement.id, "reference": settlement.reference},
            ))
        await self.notifications.dispatcher.run(db, effects)

    async def send_reminder(
        self,
        db: AsyncSession,
        settlement_id: int,
        actor_id: Optional[int] = None,
    ) -> Notification:
        """
        Remind the seller of an issued statement.

        Only PendingPayment and Paid settlements have an issued statement.
        Each reminder is its own outbox row, numbered per settlement, so a
        second reminder is delivered rather than deduplicated away.
        """
        async with self.locks.hold(settlement_key(settlement_id)):
            try:
                settlement = await self.get_settlement(db, settlement_id)
                if settlement.status not in (SettlementStatus.PENDING_PAYMENT, SettlementStatus.PAID):
                    raise StateConflictError(
                        f"Settlement {settlement.reference} has no issued statement",
                        details={"settlement_id": settlement_id, "status": settlement.status.value},
                    )
                key_prefix = f"settlement:{settlement_id}:reminder:"
                sent_before = (await db.execute(
                    select(func.count(Notification.id)).where(Notification.dedupe_key.like(f"{key_prefix}%"))
                )).scalar_one()
                notice = await NotificationService.enqueue(
                    db,
                    user_id=settlement.seller_id,
                    kind=NotificationKind.SETTLEMENT_REMINDER,
                    dedupe_key=f"{key_prefix}{sent_before + 1}",
                    payload={
                        "settlement_id": settlement_id,
                        "reference": settlement.reference,
                        "net_payout": str(settlement.net_payout),
                        "currency": settlement.currency,
                        "reminder": sent_before + 1,
                    },
                )
                await log_event(
                    db,
                    AuditAction.SETTLEMENT_REMINDER_SENT,
                    entity_type="settlement",
                    entity_id=settlement_id,
                    actor_id=actor_id,
                    metadata={"reference": settlement.reference, "reminder": sent_before + 1},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        if self.notifications is not None:
            await self.notifications.deliver(db, [notice])
        await db.refresh(notice)
        logger.info("Reminder %s sent for settlement %s", sent_before + 1, settlement.reference)
        return notice

    async def batch_update_status(
        self,
        session_factory: Callable[[], AsyncSession],
        settlement_ids: List[int],
        status: SettlementStatus,
        actor_id: Optional[int] = None,
    ) -> List[BatchOutcome]:
        """
        Transition several settlements; each in its own session and transaction.

        A failing record is reported in its outcome and leaves the others alone.
        """
        outcomes = []
        for settlement_id in settlement_ids:
            async with session_factory() as session:
                try:
                    settlement = await self.update_status(
                        session, settlement_id, status, actor_id=actor_id
                    )
                    outcomes.append(BatchOutcome(settlement_id, True, status=settlement.status))
                except AppException as exc:
                    outcomes.append(BatchOutcome(settlement_id, False, error=exc.message))
                except SQLAlchemyError as exc:
                    logger.exception("Batch transition of settlement %s failed", settlement_id)
                    outcomes.append(BatchOutcome(settlement_id, False, error=str(exc)))
        return outcomes

    async def update_adjustments(
        self,
        db: AsyncSession,
        settlement_id: int,
        adjustments: Iterable[Any],
        actor_id: Optional[int] = None,
    ) -> Settlement:
        """Replace a Draft settlement's adjustments and recompute its payout."""
        adjustment_inputs = normalize_adjustments(adjustments)

        async with self.locks.hold(settlement_key(settlement_id)):
            try:
                settlement = await self.get_settlement(db, settlement_id)
                if settlement.status != SettlementStatus.DRAFT:
                    raise StateConflictError(
                        "Adjustments can only be edited while the settlement is Draft",
                        details={"settlement_id": settlement_id, "status": settlement.status.value},
                    )

                adjustments_total = sum_money(adj.amount for adj in adjustment_inputs)
                settlement.adjustments = [
                    SettlementAdjustment(type=adj.type, description=adj.description, amount=adj.amount)
                    for adj in adjustment_inputs
                ]
                settlement.adjustments_total = adjustments_total
                settlement.net_payout = settlement.total_sales - settlement.commission - adjustments_total

                await log_event(
                    db,
                    AuditAction.SETTLEMENT_ADJUSTED,
                    entity_type="settlement",
                    entity_id=settlement_id,
                    actor_id=actor_id,
                    metadata={"adjustments_total": str(adjustments_total)},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        return await self.get_settlement(db, settlement_id)
