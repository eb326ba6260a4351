"""
User roles enumeration.

Defines the role types for the auction marketplace.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operates auctions, invoices and seller settlements
        SELLER: Consigns items and receives settlement payouts
        BIDDER: Places bids and pays invoices (default role)
    """
    ADMIN = "ADMIN"
    SELLER = "SELLER"
    BIDDER = "BIDDER"
