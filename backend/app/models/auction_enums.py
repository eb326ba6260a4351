"""
Auction enumerations.
"""

import enum


class AuctionStatus(str, enum.Enum):
    """Auction status enumeration."""
    UPCOMING = "Upcoming"  # Scheduled, start time not reached
    LIVE = "Live"  # Accepting bids
    CLOSED = "Closed"  # Winners resolved, invoices issued
    CANCELLED = "Cancelled"  # Administrative override
