"""APScheduler setup for the periodic auction activation and close trigger."""

import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
import backend.app.core.redis_client as redis_client_module
from backend.app.domain.auction.winner_resolver import WinnerResolver
from backend.app.domain.clock import as_utc, utcnow
from backend.app.models.auction import Auction
from backend.app.models.auction_enums import AuctionStatus
from backend.app.services.audit import log_event, AuditAction
from backend.app.services.collaborators import RedisQueueNotifier
from backend.app.services.locking import compare_and_set
from backend.app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


async def activate_due_auctions(
    session_factory: Callable[[], AsyncSession], now: Optional[datetime] = None
) -> int:
    """Promote Upcoming auctions whose window has opened to Live."""
    now = as_utc(now) or utcnow()
    activated = 0
    async with session_factory() as session:
        result = await session.execute(
            select(Auction.id).where(
                Auction.status == AuctionStatus.UPCOMING,
                Auction.start_at <= now,
                Auction.end_at > now,
            )
        )
        for auction_id in result.scalars().all():
            if await compare_and_set(
                session, Auction, auction_id, AuctionStatus.UPCOMING, {"status": AuctionStatus.LIVE}
            ):
                await log_event(
                    session, AuditAction.AUCTION_ACTIVATED, entity_type="auction", entity_id=auction_id
                )
                activated += 1
        await session.commit()

    if activated:
        logger.info("Activated %s auction(s)", activated)
    return activated


async def close_due_auctions(
    session_factory: Callable[[], AsyncSession],
    resolver: Optional[WinnerResolver] = None,
    now: Optional[datetime] = None,
) -> int:
    """Close every open auction whose end time has passed, one session each."""
    now = as_utc(now) or utcnow()
    resolver = resolver or WinnerResolver()

    async with session_factory() as session:
        result = await session.execute(
            select(Auction.id)
            .where(
                Auction.status.in_([AuctionStatus.UPCOMING, AuctionStatus.LIVE]),
                Auction.end_at <= now,
            )
            .order_by(Auction.end_at)
        )
        due = list(result.scalars().all())

    closed = 0
    for auction_id in due:
        async with session_factory() as session:
            try:
                outcome = await resolver.close_auction(session, auction_id, now=now)
                if not outcome.already_closed:
                    closed += 1
            except Exception as e:
                logger.error(f"Scheduled close of auction {auction_id} failed: {e}", exc_info=True)
    return closed


def init_scheduler(
    session_factory: Callable[[], AsyncSession],
    resolver: Optional[WinnerResolver] = None,
) -> AsyncIOScheduler:
    """Start the APScheduler with the activation and close jobs."""
    global _scheduler
    resolver = resolver or WinnerResolver(
        notifications=NotificationService(RedisQueueNotifier(redis_client_module.redis_client))
    )
    interval = IntervalTrigger(seconds=settings.auction_close_interval_seconds)
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        activate_due_auctions,
        trigger=interval,
        args=[session_factory],
        id="activate_due_auctions",
        name="Activate Upcoming Auctions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.add_job(
        close_due_auctions,
        trigger=interval,
        args=[session_factory, resolver],
        id="close_due_auctions",
        name="Close Ended Auctions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    logger.info(
        "APScheduler started with auction activation/close every %ss",
        settings.auction_close_interval_seconds,
    )
    return _scheduler


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("APScheduler shut down")
