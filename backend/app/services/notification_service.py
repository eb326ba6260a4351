"""
Notification Service.

Outbox-backed notifications: rows are enqueued inside the transaction that
causes them and delivered after commit through the injected Notifier.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.notification import Notification, NotificationKind, DeliveryStatus
from backend.app.models.user import User
from backend.app.models.enums import UserRole
from backend.app.services.collaborators import Notifier
from backend.app.services.fanout import SideEffect, SideEffectDispatcher

logger = logging.getLogger(__name__)

DELIVERY_TASK = "notification_delivery"


class NotificationService:

    def __init__(self, notifier: Notifier, dispatcher: Optional[SideEffectDispatcher] = None):
        self.notifier = notifier
        self.dispatcher = dispatcher or SideEffectDispatcher()

    @staticmethod
    async def enqueue(
        db: AsyncSession,
        user_id: int,
        kind: NotificationKind,
        dedupe_key: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Notification]:
        """
        Add a PENDING notification to the current transaction.

        Returns None when a row with the same dedupe_key already exists.
        """
        existing = await db.execute(
            select(Notification.id).where(Notification.dedupe_key == dedupe_key)
        )
        if existing.scalar_one_or_none() is not None:
            logger.info("Notification %s already enqueued", dedupe_key)
            return None

        notif = Notification(
            user_id=user_id,
            kind=kind,
            dedupe_key=dedupe_key,
            payload=payload,
            status=DeliveryStatus.PENDING,
        )
        db.add(notif)
        await db.flush()  # Caller commits
        return notif

    @staticmethod
    async def admin_ids(db: AsyncSession) -> List[int]:
        result = await db.execute(
            select(User.id).where(User.role == UserRole.ADMIN, User.is_active == True).order_by(User.id)
        )
        return list(result.scalars().all())

    def delivery_effect(self, notif: Notification) -> SideEffect:
        """Side effect that delivers notif and records the outcome on the row."""

        def on_success(_result):
            notif.attempts += 1
            notif.status = DeliveryStatus.SENT
            notif.sent_at = datetime.now(timezone.utc)
            notif.last_error = None

        def on_failure(error: str):
            notif.attempts += 1
            notif.status = DeliveryStatus.FAILED
            notif.last_error = error[:500]

        return SideEffect(
            task_name=DELIVERY_TASK,
            run=lambda: self.notifier.notify(notif.user_id, notif.kind.value, notif.payload or {}),
            payload={"notification_id": notif.id, "kind": notif.kind.value, "user_id": notif.user_id},
            on_success=on_success,
            on_failure=on_failure,
        )

    async def deliver(self, db: AsyncSession, notifications: List[Notification]) -> int:
        """Deliver committed outbox rows that are not yet SENT. Returns sent count."""
        pending = [n for n in notifications if n is not None and n.status != DeliveryStatus.SENT]
        outcomes = await self.dispatcher.run(db, [self.delivery_effect(n) for n in pending])
        return sum(1 for outcome in outcomes if outcome.ok)

    async def retry_failed(self, db: AsyncSession, limit: int = 100) -> int:
        """Re-deliver FAILED rows. SENT rows are never picked up."""
        result = await db.execute(
            select(Notification)
            .where(Notification.status == DeliveryStatus.FAILED)
            .order_by(Notification.id)
            .limit(limit)
        )
        failed = list(result.scalars().all())
        if not failed:
            return 0

        sent = await self.deliver(db, failed)
        await self._resolve_dead_letters(db, {n.id for n in failed if n.status == DeliveryStatus.SENT})
        logger.info("Retried %s failed notification(s), %s sent", len(failed), sent)
        return sent

    @staticmethod
    async def _resolve_dead_letters(db: AsyncSession, sent_ids: Set[int]) -> None:
        """Mark dead letters of now-delivered notifications as processed."""
        if not sent_ids:
            return
        result = await db.execute(
            select(DeadLetterQueue).where(
                DeadLetterQueue.task_name == DELIVERY_TASK,
                DeadLetterQueue.status == DLQStatus.FAILED,
            )
        )
        now = datetime.now(timezone.utc)
        for entry in result.scalars().all():
            if (entry.payload or {}).get("notification_id") in sent_ids:
                entry.status = DLQStatus.PROCESSED
                entry.retry_count = (entry.retry_count or 0) + 1
                entry.last_retry_at = now
        await db.commit()

    @staticmethod
    async def inbox(
        db: AsyncSession,
        user_id: int,
        unread_only: bool = False,
        kind: Optional[NotificationKind] = None,
        limit: int = 50
    ) -> List[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)
        if kind is not None:
            query = query.where(Notification.kind == kind)

        result = await db.execute(
            query.order_by(desc(Notification.created_at), desc(Notification.id)).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def mark_read(db: AsyncSession, notification_id: int, user_id: int) -> Optional[Notification]:
        """Mark one of user_id's notifications read. Caller commits."""
        result = await db.execute(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.user_id == user_id
            )
        )
        notif = result.scalar_one_or_none()
        if notif is not None:
            notif.is_read = True
            await db.flush()
        return notif

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read == False)
            .values(is_read=True)
        )
        return result.rowcount
