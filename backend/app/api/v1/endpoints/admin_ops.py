"""
Admin Operations API Endpoints.

Retry of failed notification fan-out, dead-letter inspection and the audit trail.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from typing import List, Optional

from backend.app.db.session import get_db
from backend.app.models.dlq import DeadLetterQueue, DLQStatus
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_notification_service
from backend.app.core.guards import require_role
from backend.app.schemas.ops import AuditEntryResponse, DLQEntryResponse, RetryResponse
from backend.app.services.audit import get_audit_trail
from backend.app.services.notification_service import NotificationService

router = APIRouter(prefix="/admin/ops", tags=["Admin - Ops"])


@router.post("/notifications/retry", response_model=RetryResponse)
async def retry_failed_notifications(
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    notifications: NotificationService = Depends(get_notification_service),
    db: AsyncSession = Depends(get_db)
):
    """Re-deliver FAILED notifications. Delivered ones are never re-sent."""
    sent = await notifications.retry_failed(db, limit=limit)
    return RetryResponse(retried=sent)


@router.get("/dlq", response_model=List[DLQEntryResponse])
async def list_dead_letters(
    status_filter: Optional[DLQStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    query = select(DeadLetterQueue)
    if status_filter:
        query = query.where(DeadLetterQueue.status == status_filter)
    result = await db.execute(query.order_by(desc(DeadLetterQueue.created_at), desc(DeadLetterQueue.id)).limit(limit))
    return result.scalars().all()


@router.get("/audit", response_model=List[AuditEntryResponse])
async def list_audit_entries(
    entity_type: Optional[str] = Query(None),
    entity_id: Optional[int] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Engine transition history, most recent first."""
    return await get_audit_trail(db, entity_type=entity_type, entity_id=entity_id, action=action, limit=limit)
