"""
Bid database model.

Append-only ledger: rows are never updated or deleted.
"""

from sqlalchemy import Column, Integer, Numeric, ForeignKey, DateTime, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base


class Bid(Base):
    """
    Bid model.

    Per item, amounts are non-decreasing in insertion order. Ties at close are
    broken by earliest created_at, then lowest id.
    """
    __tablename__ = "bids"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    item_id = Column(Integer, ForeignKey('auction_items.id'), nullable=False, index=True)
    bidder_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)

    # Timestamps (Immutable - no updated_at)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_bids_item_amount', 'item_id', 'amount'),
    )

    def __repr__(self):
        return f"<Bid(id={self.id}, item_id={self.item_id}, amount={self.amount})>"
