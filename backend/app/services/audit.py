"""
Audit logging service for tracking engine transitions and admin actions.

Audit rows join the caller's transaction: an audit entry exists if and only
if the transition it describes was committed.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    # Bidding
    BID_PLACED = "BID_PLACED"

    # Auction close
    AUCTION_ACTIVATED = "AUCTION_ACTIVATED"
    AUCTION_CLOSED = "AUCTION_CLOSED"
    INVOICES_GENERATED = "INVOICES_GENERATED"
    ITEM_INVOICE_GENERATED = "ITEM_INVOICE_GENERATED"

    # Payments
    INVOICE_PAID = "INVOICE_PAID"
    INVOICE_CANCELLED = "INVOICE_CANCELLED"
    PAYMENT_OPENED = "PAYMENT_OPENED"

    # Settlements
    SETTLEMENT_CREATED = "SETTLEMENT_CREATED"
    SETTLEMENT_STATUS_CHANGED = "SETTLEMENT_STATUS_CHANGED"
    SETTLEMENT_ADJUSTED = "SETTLEMENT_ADJUSTED"
    SETTLEMENT_REMINDER_SENT = "SETTLEMENT_REMINDER_SENT"


async def log_event(
    db: AsyncSession,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session (caller commits)
        action: Action being performed (use AuditAction constants)
        entity_type: Kind of record acted upon (e.g. "invoice")
        entity_id: ID of the record acted upon
        actor_id: ID of user performing the action, None for system actions
        metadata: Additional context as JSON

    Returns:
        Pending AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Args:
        db: Database session
        entity_type: Filter by entity kind
        entity_id: Filter by entity ID
        action: Filter by action type
        limit: Maximum number of records to return

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())
