"""
FastAPI dependencies: the acting user and the engine's collaborators.

Every collaborator is provided through a dependency so that tests (and
alternative deployments) can swap adapters with dependency_overrides.
"""

from typing import Callable
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from backend.app.core.jwt import decode_access_token
from backend.app.core.redis_client import redis_client
from backend.app.core.token_revocation import is_token_revoked, are_user_tokens_revoked
from backend.app.db.session import get_db, get_session_factory
from backend.app.domain.auction.winner_resolver import WinnerResolver
from backend.app.domain.bidding.bid_evaluator import BidEvaluator
from backend.app.domain.billing.invoice_consolidator import InvoiceConsolidator
from backend.app.domain.billing.settlement_calculator import SettlementCalculator
from backend.app.domain.payments.payment_reconciler import PaymentReconciler
from backend.app.models.user import User
from backend.app.services.collaborators import (
    DocumentGenerator,
    JsonDocumentGenerator,
    Notifier,
    Publisher,
    RedisPublisher,
    RedisQueueNotifier,
)
from backend.app.services.notification_service import NotificationService
from backend.app.services.payment_gateway import PaymentGateway, StripeGateway

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    Resolve the acting user from the bearer token.

    Checks:
    1. JWT signature and expiry
    2. Token not explicitly revoked
    3. User's tokens not globally revoked (user blocked)
    4. User still exists and is active

    Returns:
        Decoded token payload (sub, user_id, role)

    Raises:
        HTTPException: 401/403 if authentication fails
    """
    token = credentials.credentials

    payload = decode_access_token(token)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if await is_token_revoked(token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if await are_user_tokens_revoked(user_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User access has been revoked",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )

    return payload


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

def get_publisher() -> Publisher:
    return RedisPublisher(redis_client)


def get_notifier() -> Notifier:
    return RedisQueueNotifier(redis_client)


def get_document_generator() -> DocumentGenerator:
    return JsonDocumentGenerator()


def get_payment_gateway() -> PaymentGateway:
    return StripeGateway()


def get_sessionmaker() -> Callable[[], AsyncSession]:
    return get_session_factory()


# ---------------------------------------------------------------------------
# Engine services
# ---------------------------------------------------------------------------

def get_notification_service(notifier: Notifier = Depends(get_notifier)) -> NotificationService:
    return NotificationService(notifier)


def get_bid_evaluator(
    publisher: Publisher = Depends(get_publisher),
    notifications: NotificationService = Depends(get_notification_service),
) -> BidEvaluator:
    return BidEvaluator(publisher, notifications)


def get_winner_resolver(
    notifications: NotificationService = Depends(get_notification_service),
) -> WinnerResolver:
    return WinnerResolver(notifications=notifications)


def get_invoice_consolidator(
    notifications: NotificationService = Depends(get_notification_service),
) -> InvoiceConsolidator:
    return InvoiceConsolidator(notifications=notifications)


def get_settlement_calculator(
    notifications: NotificationService = Depends(get_notification_service),
    documents: DocumentGenerator = Depends(get_document_generator),
) -> SettlementCalculator:
    return SettlementCalculator(notifications=notifications, documents=documents)


def get_payment_reconciler(
    publisher: Publisher = Depends(get_publisher),
    notifications: NotificationService = Depends(get_notification_service),
    documents: DocumentGenerator = Depends(get_document_generator),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentReconciler:
    return PaymentReconciler(publisher, notifications, documents, gateway=gateway)
