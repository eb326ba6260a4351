"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    bids, auctions, invoices, webhooks, settlements, admin_ops, notifications
)

router = APIRouter()

# Bidding
router.include_router(bids.router)

# Auction close and winners
router.include_router(auctions.router)
router.include_router(auctions.admin_router)

# Invoices and payments
router.include_router(invoices.router)
router.include_router(invoices.admin_router)
router.include_router(webhooks.router)

# Seller settlements
router.include_router(settlements.router)
router.include_router(settlements.seller_router)

# Ops
router.include_router(admin_ops.router)
router.include_router(notifications.router)
