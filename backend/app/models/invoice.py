"""
Invoice database models.

An invoice is either consolidated (one per winner per auction, with line
items) or legacy single-item (item_id set, no line items).
"""

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import InvoiceStatus


class Invoice(Base):
    """
    Invoice model.

    total_amount equals the sum of line totals (or the legacy
    bid + premium + tax). status = Paid implies paid_at is set, once.
    """
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    invoice_number = Column(String(50), unique=True, nullable=False, index=True)

    # Parties
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    auction_id = Column(Integer, ForeignKey('auctions.id'), nullable=True, index=True)

    # Legacy single-item fields
    item_id = Column(Integer, ForeignKey('auction_items.id'), nullable=True, unique=True)
    winning_bid_id = Column(Integer, ForeignKey('bids.id'), nullable=True)
    bid_amount = Column(Numeric(12, 2), nullable=True)
    buyers_premium = Column(Numeric(12, 2), nullable=True)
    tax_amount = Column(Numeric(12, 2), nullable=True)

    # Financials
    subtotal = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(Enum(InvoiceStatus), default=InvoiceStatus.UNPAID, nullable=False, index=True)

    # Gateway references
    payment_intent_id = Column(String(255), nullable=True, index=True)
    checkout_session_id = Column(String(255), nullable=True, index=True)
    payment_link = Column(String(500), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    line_items = relationship(
        "InvoiceLineItem",
        lazy="selectin",
        order_by="InvoiceLineItem.id",
        cascade="all, delete-orphan",
    )

    # One consolidated invoice per winner per auction
    __table_args__ = (
        UniqueConstraint('auction_id', 'user_id', name='uq_invoices_auction_user'),
    )

    @property
    def is_legacy(self) -> bool:
        return self.item_id is not None

    def __repr__(self):
        return f"<Invoice(id={self.id}, number='{self.invoice_number}', status='{self.status.value}', total={self.total_amount})>"


class InvoiceLineItem(Base):
    """One won item on a consolidated invoice. Immutable once written."""
    __tablename__ = "invoice_line_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    invoice_id = Column(Integer, ForeignKey('invoices.id'), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('auction_items.id'), nullable=False, unique=True)
    winning_bid_id = Column(Integer, ForeignKey('bids.id'), nullable=True)

    hammer_amount = Column(Numeric(12, 2), nullable=False)
    premium_amount = Column(Numeric(12, 2), nullable=False)
    tax_amount = Column(Numeric(12, 2), nullable=False)
    line_total = Column(Numeric(12, 2), nullable=False)

    def __repr__(self):
        return f"<InvoiceLineItem(invoice_id={self.invoice_id}, item_id={self.item_id}, total={self.line_total})>"
