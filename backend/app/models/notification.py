"""
Notification database model.

Outbox for user- and admin-facing notices. Rows are written in the same
transaction as the state change that causes them; delivery happens after
commit.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class NotificationKind(str, enum.Enum):
    OUTBID = "OUTBID"
    PAYMENT_RECEIPT = "PAYMENT_RECEIPT"
    ADMIN_INVOICE_PAID = "ADMIN_INVOICE_PAID"
    SETTLEMENT_STATEMENT = "SETTLEMENT_STATEMENT"
    SETTLEMENT_PAID = "SETTLEMENT_PAID"
    INVOICE_ISSUED = "INVOICE_ISSUED"
    SETTLEMENT_REMINDER = "SETTLEMENT_REMINDER"


class DeliveryStatus(str, enum.Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Notification(Base):
    """
    Notification outbox row.

    dedupe_key is unique: one row per (cause, recipient, kind), so a
    transition can never enqueue the same notice twice.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Content
    kind = Column(Enum(NotificationKind), nullable=False, index=True)
    dedupe_key = Column(String(255), unique=True, nullable=False)
    payload = Column(JSON, nullable=True)

    # Delivery
    status = Column(Enum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(String(500), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, kind='{self.kind.value}', status='{self.status.value}')>"
