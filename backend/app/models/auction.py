"""
Auction database model.

An auction owns a set of items and a bidding window.
"""

from sqlalchemy import Column, Integer, String, DateTime, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.auction_enums import AuctionStatus


class Auction(Base):
    """
    Auction model.

    Status moves Upcoming -> Live -> Closed (or Cancelled). The Live -> Closed
    move is a compare-and-set and is the single admission gate for winner
    resolution and invoice generation.
    """
    __tablename__ = "auctions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(255), nullable=False)

    # Bidding window
    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False, index=True)

    status = Column(Enum(AuctionStatus), default=AuctionStatus.UPCOMING, nullable=False, index=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<Auction(id={self.id}, status='{self.status.value}')>"
