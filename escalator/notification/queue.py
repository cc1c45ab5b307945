"""Notifier that enqueues requests for the delivery service."""

import asyncio
import uuid
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

from escalator.core.config import get_settings
from escalator.core.errors import NotificationDispatchError
from escalator.core.logging import get_logger
from escalator.models.notification import NotificationPriority, NotificationRequest
from escalator.notification.base import Notifier
from escalator.observability.metrics import NOTIFICATIONS_QUEUED
from escalator.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class NotificationQueue:
    """Notification request queue consumed by the delivery service."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def enqueue(self, request: NotificationRequest) -> None:
        """Add a request to the queue."""
        await self.redis.lpush(RedisKeys.NOTIFY_QUEUE, request.model_dump_json())

    async def dequeue(self, timeout: int = 5) -> NotificationRequest | None:
        """Get the oldest request, blocking up to ``timeout`` seconds."""
        result = await self.redis.brpop(RedisKeys.NOTIFY_QUEUE, timeout=timeout)
        if result:
            _, data = result
            return NotificationRequest.model_validate_json(data)
        return None


class QueueNotifier(Notifier):
    """Fire-and-forget notifier writing to the Redis notification queue."""

    def __init__(self, redis: Redis | None = None, timeout: float | None = None):
        self._queue = NotificationQueue(redis)
        self._timeout = timeout or get_settings().notification_timeout_seconds

    async def notify(
        self,
        recipients: list[str],
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        channels: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        if not recipients:
            raise NotificationDispatchError("Notification has no recipients")

        request = NotificationRequest(
            request_id=f"notify_{uuid.uuid4().hex[:12]}",
            recipients=recipients,
            title=title,
            body=body,
            priority=priority,
            channels=channels or [],
            metadata=metadata or {},
        )

        try:
            await asyncio.wait_for(self._queue.enqueue(request), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NotificationDispatchError("Timed out queueing notification") from e
        except RedisError as e:
            raise NotificationDispatchError(f"Failed to queue notification: {e}") from e

        NOTIFICATIONS_QUEUED.labels(priority=priority.value).inc()
        logger.info(
            "Notification queued",
            request_id=request.request_id,
            recipients=len(recipients),
            priority=priority.value,
        )
        return request.request_id
