"""
FastAPI Application Entry Point.

This is the main application file for the Auction Engine Backend.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from backend.app.core.config import settings
from backend.app.core.redis_client import ping_redis
from backend.app.api.v1.router import router as api_v1_router
from backend.app.core.observability import ObservabilityMiddleware, configure_logging
from backend.app.db.session import engine, Base, AsyncSessionLocal
from backend.app.domain.billing.numbering import ensure_sequences
from backend.app.services.auction_scheduler import init_scheduler, shutdown_scheduler
from backend.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

# Import models to ensure they are registered with Base
from backend.app.models.user import User
from backend.app.models.audit_log import AuditLog
from backend.app.models.auction import Auction
from backend.app.models.settlement import Settlement, SettlementItem, SettlementAdjustment
from backend.app.models.auction_item import AuctionItem
from backend.app.models.bid import Bid
from backend.app.models.invoice import Invoice, InvoiceLineItem
from backend.app.models.number_sequence import NumberSequence
from backend.app.models.notification import Notification
from backend.app.models.dlq import DeadLetterQueue

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Creates database tables and counter rows on startup.
    2. Starts the periodic auction activation/close trigger.
    3. Stops the scheduler on shutdown.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        await ensure_sequences(session)

    if settings.enable_close_scheduler:
        init_scheduler(AsyncSessionLocal)
    yield
    shutdown_scheduler()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Bid and settlement reconciliation engine for online auctions",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    redis_ok = await ping_redis()
    return {
        "status": "healthy" if redis_ok else "degraded",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "ok" if redis_ok else "unavailable",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": "Welcome to Auction Engine Backend API",
        "docs": "/docs",
        "health": "/health",
    }
