"""
Seller Settlement database models.

Aggregates a seller's sold items into a single payout statement.
"""

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Enum
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.billing_enums import SettlementStatus, AdjustmentType


class Settlement(Base):
    """
    Settlement model.

    net_payout = total_sales - commission - adjustments_total, and may be
    negative. Follows Draft -> PendingPayment -> Paid, or -> Cancelled from
    Draft/PendingPayment.
    """
    __tablename__ = "settlements"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference = Column(String(50), unique=True, nullable=False, index=True)

    # Parties
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)  # Payee
    auction_id = Column(Integer, ForeignKey('auctions.id'), nullable=True, index=True)

    # Financials
    commission_rate = Column(Numeric(5, 2), nullable=False)
    total_sales = Column(Numeric(12, 2), nullable=False)
    commission = Column(Numeric(12, 2), nullable=False)
    adjustments_total = Column(Numeric(12, 2), nullable=False, default=0)
    net_payout = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    # Status
    status = Column(Enum(SettlementStatus), default=SettlementStatus.DRAFT, nullable=False, index=True)

    # Timestamps
    generated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship(
        "SettlementItem",
        lazy="selectin",
        order_by="SettlementItem.id",
        cascade="all, delete-orphan",
    )
    adjustments = relationship(
        "SettlementAdjustment",
        lazy="selectin",
        order_by="SettlementAdjustment.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self):
        return f"<Settlement(id={self.id}, status='{self.status.value}', net={self.net_payout})>"


class SettlementItem(Base):
    """Snapshot of an item's prices at the time it was settled."""
    __tablename__ = "settlement_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    settlement_id = Column(Integer, ForeignKey('settlements.id'), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey('auction_items.id'), nullable=False, index=True)

    sold_price = Column(Numeric(12, 2), nullable=False)
    base_price = Column(Numeric(12, 2), nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)

    def __repr__(self):
        return f"<SettlementItem(settlement_id={self.settlement_id}, item_id={self.item_id})>"


class SettlementAdjustment(Base):
    """Expense or deduction applied to a settlement. Amount is signed."""
    __tablename__ = "settlement_adjustments"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    settlement_id = Column(Integer, ForeignKey('settlements.id'), nullable=False, index=True)
    type = Column(Enum(AdjustmentType), nullable=False)
    description = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)

    def __repr__(self):
        return f"<SettlementAdjustment(type='{self.type.value}', amount={self.amount})>"
