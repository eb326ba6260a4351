"""
Redis client initialization.

Backs the real-time publisher, the notification outbox queue and token
revocation lookups.
"""

import redis.asyncio as redis
from backend.app.core.config import settings


# Create async Redis client
redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency returning the shared client."""
    return redis_client


async def ping_redis() -> bool:
    try:
        return await redis_client.ping()
    except Exception:
        return False
