"""
External collaborator interfaces and their production adapters.

The engine never talks to a global client: each domain service receives the
collaborators it needs. Tests inject recording fakes.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi.encoders import jsonable_encoder

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class Publisher(ABC):
    """Real-time transport. Delivery is best-effort."""

    @abstractmethod
    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class Notifier(ABC):
    """User/admin notification delivery (email, push)."""

    @abstractmethod
    async def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        ...


class DocumentGenerator(ABC):
    """Renders invoice receipts and settlement statements."""

    @abstractmethod
    async def render(self, kind: str, snapshot: Dict[str, Any]) -> bytes:
        ...


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(jsonable_encoder(data))


class RedisPublisher(Publisher):
    """Publishes ``{"event", "payload"}`` JSON messages on Redis pub/sub channels."""

    def __init__(self, redis_client):
        self.redis = redis_client

    async def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        receivers = await self.redis.publish(channel, _dumps({"event": event, "payload": payload}))
        logger.debug("Published %s on %s to %s subscriber(s)", event, channel, receivers)


class RedisQueueNotifier(Notifier):
    """
    Pushes notification jobs onto a Redis list consumed by the mail worker.
    """

    def __init__(self, redis_client, queue_key: str = None):
        self.redis = redis_client
        self.queue_key = queue_key or settings.notification_outbox_key

    async def notify(self, user_id: int, kind: str, payload: Dict[str, Any]) -> None:
        job = {
            "user_id": user_id,
            "kind": kind,
            "payload": payload,
            "enqueued_at": datetime.now(timezone.utc),
        }
        await self.redis.rpush(self.queue_key, _dumps(job))


class JsonDocumentGenerator(DocumentGenerator):
    """Renders a document as a JSON snapshot; the PDF renderer consumes it."""

    async def render(self, kind: str, snapshot: Dict[str, Any]) -> bytes:
        document = {
            "kind": kind,
            "rendered_at": datetime.now(timezone.utc),
            "data": snapshot,
        }
        return _dumps(document).encode("utf-8")
