"""
Token revocation checks backed by Redis.

The identity service writes blacklist keys when a token is revoked or a user
is blocked; the engine only reads them.
"""

import logging

from backend.app.core.redis_client import redis_client
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Redis key prefixes shared with the identity service
TOKEN_BLACKLIST_PREFIX = "blacklist:token:"
USER_TOKENS_PREFIX = "user:tokens:"


async def revoke_token(token: str, user_id: int) -> bool:
    """Blacklist a token until it would have expired anyway."""
    try:
        ttl_seconds = settings.access_token_expire_minutes * 60
        await redis_client.setex(f"{TOKEN_BLACKLIST_PREFIX}{token}", ttl_seconds, str(user_id))
        return True
    except Exception as e:
        logger.error(f"Error revoking token for user {user_id}: {e}")
        return False


async def is_token_revoked(token: str) -> bool:
    try:
        exists = await redis_client.exists(f"{TOKEN_BLACKLIST_PREFIX}{token}")
        return exists > 0
    except Exception as e:
        # Fail open: a Redis outage must not lock every bidder out
        logger.warning(f"Error checking token revocation: {e}")
        return False


async def are_user_tokens_revoked(user_id: int) -> bool:
    try:
        exists = await redis_client.exists(f"{USER_TOKENS_PREFIX}{user_id}:revoked")
        return exists > 0
    except Exception as e:
        logger.warning(f"Error checking user token revocation for {user_id}: {e}")
        return False
