"""
Bid Evaluator (Domain Logic).

Admits or rejects a single bid against an item's current state. Admission
is serialized per item: the item row is read under lock, so a bid that lost
the race is judged against the winner's amount, never a stale minimum.

The engine ranks literal amounts only; there is no proxy bidding here.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import BidRejectedError, ValidationFailedError
from backend.app.domain.bidding.increment_ladder import min_next_bid, minimum_acceptable_bid
from backend.app.domain.billing.money import is_currency_value, to_money
from backend.app.domain.clock import as_utc, utcnow
from backend.app.models.auction import Auction
from backend.app.models.auction_enums import AuctionStatus
from backend.app.models.auction_item import AuctionItem
from backend.app.models.bid import Bid
from backend.app.models.notification import Notification, NotificationKind
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.collaborators import Publisher
from backend.app.services.fanout import SideEffect, SideEffectDispatcher
from backend.app.services.locking import KeyedLock, item_key, record_locks
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

BID_PLACED_EVENT = "bid-placed"
OUTBID_EVENT = "outbid"


def item_channel(item_id: int) -> str:
    return f"auction-item-{item_id}"


def user_channel(user_id: int) -> str:
    return f"user-{user_id}"


@dataclass
class BidPlacement:
    bid: Bid
    current_bid: Decimal
    bid_count: int
    is_reserve_met: bool
    minimum_next_bid: Decimal
    previous_high_bidder_id: Optional[int] = None


@dataclass
class MinimumBidQuote:
    item_id: int
    current_bid: Optional[Decimal]
    bid_count: int
    minimum_bid: Decimal
    is_reserve_met: bool


def ensure_auction_open(auction: Auction, now: datetime, item_id: Any = None) -> None:
    """Raise BidRejectedError unless the auction is accepting bids at now."""
    start_at = as_utc(auction.start_at)
    end_at = as_utc(auction.end_at)

    if auction.status in (AuctionStatus.CLOSED, AuctionStatus.CANCELLED) or now >= end_at:
        raise BidRejectedError(
            BidRejectedError.AUCTION_CLOSED, "Auction is closed", item_id=item_id
        )
    if now < start_at:
        raise BidRejectedError(
            BidRejectedError.AUCTION_NOT_STARTED, "Auction has not started", item_id=item_id
        )


class BidEvaluator:

    def __init__(
        self,
        publisher: Publisher,
        notifications: NotificationService,
        dispatcher: Optional[SideEffectDispatcher] = None,
        locks: KeyedLock = record_locks,
    ):
        self.publisher = publisher
        self.notifications = notifications
        self.dispatcher = dispatcher or notifications.dispatcher
        self.locks = locks

    async def place_bid(
        self,
        db: AsyncSession,
        item_id: int,
        bidder_id: int,
        amount: Any,
        now: Optional[datetime] = None,
    ) -> BidPlacement:
        """
        Admit a bid or raise BidRejectedError.

        Flow:
        1. Validate amount (positive, at most 2 decimal places)
        2. Lock the item (in-process key + row lock)
        3. Check the auction window
        4. Compare against the minimum computed from the locked state
        5. Append the bid, update the item's projection, commit
        6. Publish bid-placed and notify a displaced high bidder
        """
        if not is_currency_value(amount) or Decimal(str(amount)) <= 0:
            raise ValidationFailedError(
                "Bid amount must be a positive currency value", details={"amount": str(amount)}
            )
        amount = to_money(amount)

        async with self.locks.hold(item_key(item_id)):
            try:
                placement, outbid_notice = await self._admit(
                    db, item_id, bidder_id, amount, as_utc(now) or utcnow()
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

        logger.info(
            "Bid %s admitted on item %s: %s (count=%s)",
            placement.bid.id, item_id, amount, placement.bid_count,
        )
        await self._announce(db, item_id, placement, outbid_notice)
        return placement

    async def _admit(self, db, item_id, bidder_id, amount, now):
        item = (await db.execute(
            select(AuctionItem)
            .where(AuctionItem.id == item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()

        if not item:
            raise BidRejectedError(
                BidRejectedError.ITEM_NOT_FOUND, f"Item {item_id} not found", item_id=item_id
            )

        auction = (await db.execute(
            select(Auction)
            .where(Auction.id == item.auction_id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        ensure_auction_open(auction, now, item_id=item_id)

        minimum = minimum_acceptable_bid(item.base_price, item.current_bid)
        if amount < minimum:
            raise BidRejectedError(
                BidRejectedError.BID_TOO_LOW,
                f"Bid must be at least {minimum}",
                minimum_bid=minimum,
                item_id=item_id,
            )

        previous_high_bidder_id = await self._current_high_bidder(db, item_id)

        bid = Bid(item_id=item_id, bidder_id=bidder_id, amount=amount, created_at=now)
        db.add(bid)
        item.current_bid = amount
        item.bid_count = (item.bid_count or 0) + 1
        await db.flush()

        await log_event(
            db,
            AuditAction.BID_PLACED,
            entity_type="auction_item",
            entity_id=item_id,
            actor_id=bidder_id,
            metadata={"bid_id": bid.id, "amount": str(amount)},
        )

        outbid_notice = None
        if previous_high_bidder_id is not None and previous_high_bidder_id != bidder_id:
            outbid_notice = await NotificationService.enqueue(
                db,
                user_id=previous_high_bidder_id,
                kind=NotificationKind.OUTBID,
                dedupe_key=f"outbid:{bid.id}:{previous_high_bidder_id}",
                payload={"item_id": item_id, "new_amount": str(amount)},
            )

        placement = BidPlacement(
            bid=bid,
            current_bid=amount,
            bid_count=item.bid_count,
            is_reserve_met=item.is_reserve_met,
            minimum_next_bid=min_next_bid(amount),
            previous_high_bidder_id=previous_high_bidder_id,
        )
        return placement, outbid_notice

    @staticmethod
    async def _current_high_bidder(db: AsyncSession, item_id: int) -> Optional[int]:
        result = await db.execute(
            select(Bid.bidder_id)
            .where(Bid.item_id == item_id)
            .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _announce(
        self,
        db: AsyncSession,
        item_id: int,
        placement: BidPlacement,
        outbid_notice: Optional[Notification],
    ) -> None:
        effects = [
            SideEffect(
                task_name="realtime_publish",
                run=lambda: self.publisher.publish(
                    item_channel(item_id),
                    BID_PLACED_EVENT,
                    {
                        "currentBid": str(placement.current_bid),
                        "bidCount": placement.bid_count,
                        "isReserveMet": placement.is_reserve_met,
                        "latestBidderId": placement.bid.bidder_id,
                    },
                ),
                payload={"item_id": item_id, "event": BID_PLACED_EVENT},
                dead_letter=False,
            )
        ]
        if outbid_notice is not None:
            displaced = placement.previous_high_bidder_id
            effects.append(self.notifications.delivery_effect(outbid_notice))
            effects.append(SideEffect(
                task_name="realtime_publish",
                run=lambda: self.publisher.publish(
                    user_channel(displaced),
                    OUTBID_EVENT,
                    {"itemId": item_id, "currentBid": str(placement.current_bid)},
                ),
                payload={"user_id": displaced, "event": OUTBID_EVENT},
                dead_letter=False,
            ))
        await self.dispatcher.run(db, effects)

    async def minimum_bid(self, db: AsyncSession, item_id: int) -> MinimumBidQuote:
        """Current minimum acceptable bid for an item (presentation query)."""
        item = (await db.execute(
            select(AuctionItem)
            .where(AuctionItem.id == item_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if not item:
            raise BidRejectedError(
                BidRejectedError.ITEM_NOT_FOUND, f"Item {item_id} not found", item_id=item_id
            )
        return MinimumBidQuote(
            item_id=item.id,
            current_bid=item.current_bid,
            bid_count=item.bid_count,
            minimum_bid=minimum_acceptable_bid(item.base_price, item.current_bid),
            is_reserve_met=item.is_reserve_met,
        )

    @staticmethod
    async def list_bids(db: AsyncSession, item_id: int) -> List[Bid]:
        """Bid ledger for an item, highest first."""
        result = await db.execute(
            select(Bid)
            .where(Bid.item_id == item_id)
            .order_by(Bid.amount.desc(), Bid.created_at.asc(), Bid.id.asc())
        )
        return list(result.scalars().all())
