"""Auxiliary storage operations (idempotency, per-item locks)."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from escalator.core.config import get_settings
from escalator.core.errors import TransientStorageError
from escalator.core.logging import get_logger
from escalator.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class IdempotencyStore:
    """Idempotency check storage."""

    def __init__(self, redis: Redis | None = None, ttl_seconds: int | None = None):
        self._redis = redis
        self._ttl = ttl_seconds or get_settings().event_dedup_ttl_seconds

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def is_processed(self, event_id: str) -> bool:
        """Check if event has been processed."""
        return await self.redis.exists(RedisKeys.processed(event_id)) > 0

    async def mark_processed(self, event_id: str) -> bool:
        """Mark event as processed.

        Returns:
            True if newly marked, False if already existed
        """
        result = await self.redis.set(RedisKeys.processed(event_id), "1", nx=True, ex=self._ttl)
        return bool(result)

    async def unmark(self, event_id: str) -> None:
        """Allow an event to be processed again."""
        await self.redis.delete(RedisKeys.processed(event_id))


class ItemLocks:
    """Distributed per-item locks serializing action execution."""

    def __init__(
        self,
        redis: Redis | None = None,
        timeout: float | None = None,
        wait: float | None = None,
    ):
        settings = get_settings()
        self._redis = redis
        self._timeout = timeout or settings.item_lock_timeout_seconds
        self._wait = wait or settings.item_lock_wait_seconds

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    @asynccontextmanager
    async def hold(self, item_id: str) -> AsyncIterator[None]:
        """Hold the lock of an item for the duration of the block.

        Raises:
            TransientStorageError: If the lock cannot be acquired in time
        """
        lock = self.redis.lock(
            RedisKeys.item_lock(item_id),
            timeout=self._timeout,
            blocking_timeout=self._wait,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise TransientStorageError(f"Item lock unavailable: {e}") from e
        if not acquired:
            raise TransientStorageError(f"Timed out waiting for lock on item {item_id}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Item lock expired before release", item_id=item_id)
