"""Activity log storage."""

from redis.asyncio import Redis

from escalator.core.config import get_settings
from escalator.models.activity import ActivityLogEntry
from escalator.storage.redis_client import RedisKeys, get_redis


class ActivityLog:
    """Append-only activity log kept as capped Redis lists, newest first."""

    def __init__(self, redis: Redis | None = None, max_entries: int | None = None):
        self._redis = redis
        self._max_entries = max_entries or get_settings().activity_log_max_entries

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def append(self, entry: ActivityLogEntry) -> None:
        """Record an entry under its rule and its item.

        Args:
            entry: Entry to record
        """
        data = entry.model_dump_json()
        async with self.redis.pipeline(transaction=True) as pipe:
            for key in (RedisKeys.activity_rule(entry.rule_id), RedisKeys.activity_item(entry.item_id)):
                pipe.lpush(key, data)
                pipe.ltrim(key, 0, self._max_entries - 1)
            await pipe.execute()

    async def list_for_rule(self, rule_id: str, offset: int = 0, limit: int = 20) -> list[ActivityLogEntry]:
        """Get entries of a rule, newest first."""
        return await self._range(RedisKeys.activity_rule(rule_id), offset, limit)

    async def list_for_item(self, item_id: str, offset: int = 0, limit: int = 20) -> list[ActivityLogEntry]:
        """Get entries of an item, newest first."""
        return await self._range(RedisKeys.activity_item(item_id), offset, limit)

    async def count_for_rule(self, rule_id: str) -> int:
        return await self.redis.llen(RedisKeys.activity_rule(rule_id))

    async def count_for_item(self, item_id: str) -> int:
        return await self.redis.llen(RedisKeys.activity_item(item_id))

    async def _range(self, key: str, offset: int, limit: int) -> list[ActivityLogEntry]:
        rows = await self.redis.lrange(key, offset, offset + limit - 1)
        return [ActivityLogEntry.model_validate_json(row) for row in rows]
