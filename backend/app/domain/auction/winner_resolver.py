"""
Winner Resolver (Domain Logic).

Closes an auction: picks each item's winning bid from the bid ledger, marks
items sold and hands the resulting winner set to the invoice consolidator,
all in one transaction admitted by a Live -> Closed compare-and-set.

Closing is idempotent. A second close (sequential or concurrent) finds the
auction already Closed and returns the result rebuilt from what the first
close persisted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    InvariantViolationError,
    ResourceNotFoundError,
    StateConflictError,
)
from backend.app.domain.auction.winner_set import WinnerSet, WonItem
from backend.app.domain.billing.invoice_consolidator import InvoiceConsolidator
from backend.app.domain.clock import as_utc, utcnow
from backend.app.domain.state_machine import AUCTION_TRANSITIONS, ensure_transition
from backend.app.models.auction import Auction
from backend.app.models.auction_enums import AuctionStatus
from backend.app.models.auction_item import AuctionItem
from backend.app.models.bid import Bid
from backend.app.models.invoice import Invoice, InvoiceLineItem
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.locking import KeyedLock, auction_key, compare_and_set, record_locks
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class CloseResult:
    auction_id: int
    winner_set: WinnerSet
    invoices: List[Invoice] = field(default_factory=list)
    already_closed: bool = False


async def highest_bids(db: AsyncSession, auction_id: int) -> Dict[int, Bid]:
    """
    Winning bid per item: highest amount, earliest timestamp on ties.

    Items with no bids are absent from the result.
    """
    result = await db.execute(
        select(Bid)
        .join(AuctionItem, AuctionItem.id == Bid.item_id)
        .where(AuctionItem.auction_id == auction_id)
        .order_by(Bid.item_id, Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
    )
    winners: Dict[int, Bid] = {}
    for bid in result.scalars().all():
        winners.setdefault(bid.item_id, bid)
    return winners


class WinnerResolver:

    def __init__(
        self,
        consolidator: Optional[InvoiceConsolidator] = None,
        locks: KeyedLock = record_locks,
        notifications: Optional[NotificationService] = None,
    ):
        self.consolidator = consolidator or InvoiceConsolidator(locks=locks, notifications=notifications)
        self.locks = locks

    async def close_auction(
        self,
        db: AsyncSession,
        auction_id: int,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> CloseResult:
        """
        Close an auction and materialize its invoices.

        Flow:
        1. Lock the auction key
        2. Already Closed -> return the persisted result (no-op)
        3. Require Live, or an end time in the past
        4. Compare-and-set status to Closed (the admission gate)
        5. Mark winning items sold at their winning bid amount
        6. Generate one invoice per winning bidder, commit
        7. Deliver the winners' INVOICE_ISSUED notices
        """
        now = as_utc(now) or utcnow()

        async with self.locks.hold(auction_key(auction_id)):
            try:
                result = await self._close(db, auction_id, now, actor_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        result.invoices = await self.consolidator.existing_invoices(db, auction_id)
        await self.consolidator.announce_issued(db, result.invoices)

        if result.already_closed:
            logger.info("Auction %s already closed, returning existing result", auction_id)
        else:
            logger.info(
                "Closed auction %s: %s item(s) sold to %s bidder(s), %s invoice(s)",
                auction_id,
                result.winner_set.item_count,
                len(result.winner_set.winners),
                len(result.invoices),
            )
        return result

    async def _close(self, db, auction_id, now, actor_id) -> CloseResult:
        auction = await self._load_auction(db, auction_id)

        if auction.status == AuctionStatus.CLOSED:
            return await self._previous_result(db, auction_id)

        ensure_transition("Auction", AUCTION_TRANSITIONS, auction.status, AuctionStatus.CLOSED)
        if auction.status != AuctionStatus.LIVE and now < as_utc(auction.end_at):
            raise StateConflictError(
                f"Auction {auction_id} is {auction.status.value} and has not ended",
                details={"auction_id": auction_id, "status": auction.status.value},
            )

        admitted = await compare_and_set(
            db, Auction, auction_id, auction.status,
            {"status": AuctionStatus.CLOSED, "closed_at": now},
        )
        if not admitted:
            # Another worker closed it between our read and the update
            await db.rollback()
            return await self._previous_result(db, auction_id)

        winner_set = WinnerSet(auction_id=auction_id)
        bids = await highest_bids(db, auction_id)
        items = await self._items(db, auction_id)
        for item in items:
            bid = bids.get(item.id)
            if bid is None:
                continue
            item.is_sold = True
            item.sold_price = bid.amount
            item.winner_id = bid.bidder_id
            winner_set.add(bid.bidder_id, WonItem.from_item(item, bid.amount, bid.id))

        await db.flush()
        invoices = await self.consolidator.generate_invoices(db, winner_set, now=now, actor_id=actor_id)

        await log_event(
            db,
            AuditAction.AUCTION_CLOSED,
            entity_type="auction",
            entity_id=auction_id,
            actor_id=actor_id,
            metadata={"items_sold": winner_set.item_count, "winners": len(winner_set.winners)},
        )
        return CloseResult(auction_id=auction_id, winner_set=winner_set, invoices=invoices)

    @staticmethod
    async def _load_auction(db: AsyncSession, auction_id: int) -> Auction:
        auction = (await db.execute(
            select(Auction)
            .where(Auction.id == auction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not auction:
            raise ResourceNotFoundError("Auction", auction_id)
        return auction

    @staticmethod
    async def _items(db: AsyncSession, auction_id: int) -> List[AuctionItem]:
        result = await db.execute(
            select(AuctionItem)
            .where(AuctionItem.auction_id == auction_id)
            .order_by(AuctionItem.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    @staticmethod
    async def _invoiced_charges(db: AsyncSession, item_ids: List[int]) -> Dict[int, tuple]:
        """Item id -> (winning bid, hammer, premium, tax, total) as written to its invoice."""
        if not item_ids:
            return {}
        charges = {}
        lines = await db.execute(
            select(InvoiceLineItem).where(InvoiceLineItem.item_id.in_(item_ids))
        )
        for line in lines.scalars().all():
            charges[line.item_id] = (
                line.winning_bid_id, line.hammer_amount, line.premium_amount,
                line.tax_amount, line.line_total,
            )
        legacy = await db.execute(select(Invoice).where(Invoice.item_id.in_(item_ids)))
        for invoice in legacy.scalars().all():
            charges.setdefault(invoice.item_id, (
                invoice.winning_bid_id, invoice.bid_amount, invoice.buyers_premium,
                invoice.tax_amount, invoice.total_amount,
            ))
        return charges

    async def _persisted_winner_set(self, db: AsyncSession, auction_id: int) -> WinnerSet:
        """
        Winner set as the first close left it.

        Invoiced items report the amounts on their invoice, so later edits to
        an item's premium or tax percentages do not change the result. Items
        not yet invoiced are priced from their sold price.
        """
        winner_set = WinnerSet(auction_id=auction_id)
        sold = [item for item in await self._items(db, auction_id) if item.is_sold]
        charges = await self._invoiced_charges(db, [item.id for item in sold])
        bids = await highest_bids(db, auction_id) if len(charges) < len(sold) else {}
        for item in sold:
            if item.sold_price is None or item.winner_id is None:
                raise InvariantViolationError(
                    f"Item {item.id} is sold without a price or winner",
                    details={"item_id": item.id},
                )
            if item.id in charges:
                won = WonItem.from_charges(item, *charges[item.id])
            else:
                bid = bids.get(item.id)
                won = WonItem.from_item(item, item.sold_price, bid.id if bid else None)
            winner_set.add(item.winner_id, won)
        return winner_set

    async def _previous_result(self, db: AsyncSession, auction_id: int) -> CloseResult:
        winner_set = await self._persisted_winner_set(db, auction_id)
        invoices = await self.consolidator.existing_invoices(db, auction_id)
        return CloseResult(
            auction_id=auction_id,
            winner_set=winner_set,
            invoices=invoices,
            already_closed=True,
        )

    async def generate_invoices(
        self,
        db: AsyncSession,
        auction_id: int,
        now: Optional[datetime] = None,
        actor_id: Optional[int] = None,
    ) -> List[Invoice]:
        """
        On-demand invoice generation for a closed auction.

        Returns the existing invoices when every winner already has one.
        """
        now = as_utc(now) or utcnow()
        async with self.locks.hold(auction_key(auction_id)):
            try:
                auction = await self._load_auction(db, auction_id)
                if auction.status != AuctionStatus.CLOSED:
                    raise StateConflictError(
                        f"Auction {auction_id} is not closed",
                        details={"auction_id": auction_id, "status": auction.status.value},
                    )
                winner_set = await self._persisted_winner_set(db, auction_id)
                invoices = await self.consolidator.generate_invoices(
                    db, winner_set, now=now, actor_id=actor_id
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        invoices = await self.consolidator.existing_invoices(db, auction_id)
        await self.consolidator.announce_issued(db, invoices)
        return invoices

    async def winners(self, db: AsyncSession, auction_id: int) -> WinnerSet:
        """
        Winners query for presentation.

        Closed auctions report the persisted result. Open auctions report the
        current leaders, flagged as provisional.
        """
        auction = await db.get(Auction, auction_id)
        if not auction:
            raise ResourceNotFoundError("Auction", auction_id)

        if auction.status == AuctionStatus.CLOSED:
            return await self._persisted_winner_set(db, auction_id)

        provisional = WinnerSet(auction_id=auction_id, is_final=False)
        bids = await highest_bids(db, auction_id)
        for item in await self._items(db, auction_id):
            bid = bids.get(item.id)
            if bid is not None:
                provisional.add(bid.bidder_id, WonItem.from_item(item, bid.amount, bid.id))
        return provisional
