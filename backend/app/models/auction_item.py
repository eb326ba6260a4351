"""
Auction Item (lot) database model.
"""

from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuctionItem(Base):
    """
    Auction Item model.

    current_bid and bid_count are a cached projection of the bid ledger,
    written only by the bid evaluator. is_sold/sold_price/winner_id are
    written at close (and re-asserted on payment). sold_price is set iff
    is_sold, and equals the winning bid amount.

    settlement_id points at the one non-cancelled settlement holding the
    item; it is cleared when that settlement is cancelled.
    """
    __tablename__ = "auction_items"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Ownership
    auction_id = Column(Integer, ForeignKey('auctions.id'), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    name = Column(String(255), nullable=False)
    lot_number = Column(String(50), nullable=True)

    # Pricing
    base_price = Column(Numeric(12, 2), nullable=False)
    reserve_price = Column(Numeric(12, 2), nullable=True)
    buyers_premium_percent = Column(Numeric(5, 2), default=0, nullable=False)
    tax_percent = Column(Numeric(5, 2), default=0, nullable=False)

    # Bid projection
    current_bid = Column(Numeric(12, 2), nullable=True)
    bid_count = Column(Integer, default=0, nullable=False)

    # Close outcome
    is_sold = Column(Boolean, default=False, nullable=False, index=True)
    sold_price = Column(Numeric(12, 2), nullable=True)
    winner_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)

    # Settlement linkage
    settlement_id = Column(Integer, ForeignKey('settlements.id'), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_reserve_met(self) -> bool:
        if self.reserve_price is None:
            return True
        return self.current_bid is not None and self.current_bid >= self.reserve_price

    def __repr__(self):
        return f"<AuctionItem(id={self.id}, auction_id={self.auction_id}, current_bid={self.current_bid})>"
