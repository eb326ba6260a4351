"""
Notification inbox for the acting user.

Rows come from the outbox written by bid admission, payment reconciliation
and settlement transitions.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.db.session import get_db
from backend.app.core.dependencies import get_current_user
from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.models.notification import NotificationKind
from backend.app.schemas.notification import NotificationResponse, ReadAllResponse
from backend.app.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["Notifications"])


@router.get("", response_model=List[NotificationResponse])
async def list_notifications(
    unread_only: bool = Query(False),
    kind: Optional[NotificationKind] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    return await NotificationService.inbox(
        db, current_user["user_id"], unread_only=unread_only, kind=kind, limit=limit
    )


@router.patch("/read-all", response_model=ReadAllResponse)
async def mark_all_notifications_read(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    updated = await NotificationService.mark_all_read(db, current_user["user_id"])
    await db.commit()
    return ReadAllResponse(updated=updated)


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_notification_read(
    notification_id: int = Path(...),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Mark one of the caller's notifications read. Other users' rows are reported as missing."""
    notif = await NotificationService.mark_read(db, notification_id, current_user["user_id"])
    if notif is None:
        raise ResourceNotFoundError("Notification", notification_id)

    await db.commit()
    return notif
