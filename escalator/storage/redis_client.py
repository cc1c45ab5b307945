"""Shared Redis connection pool and the key layout of every store."""

import redis.asyncio as redis
from redis.asyncio import Redis

from escalator.core.config import get_settings
from escalator.core.logging import get_logger

logger = get_logger(__name__)

_pool: redis.ConnectionPool | None = None


async def init_redis_pool() -> None:
    """Create the process-wide pool; safe to call more than once."""
    global _pool
    if _pool is not None:
        return
    settings = get_settings()
    _pool = redis.ConnectionPool.from_url(
        settings.redis_url,
        decode_responses=True,
        max_connections=settings.redis_max_connections,
    )
    logger.info("Redis pool created", max_connections=settings.redis_max_connections)


async def close_redis_pool() -> None:
    global _pool
    if _pool is None:
        return
    await _pool.disconnect()
    _pool = None


def get_redis() -> Redis:
    """Client bound to the shared pool.

    Raises:
        RuntimeError: If :func:`init_redis_pool` has not run
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return Redis(connection_pool=_pool)


class RedisKeys:
    """Key names, all under the ``escalator:`` prefix."""

    PREFIX = "escalator"

    RULE_ALL = f"{PREFIX}:rules:all"
    RULE_VERSION = f"{PREFIX}:rules:version"
    RULE_UPDATE_CHANNEL = f"{PREFIX}:rules:update"
    ESCALATION_ALL = f"{PREFIX}:escalations:all"
    NOTIFY_QUEUE = f"{PREFIX}:notify:queue"

    @classmethod
    def rule_detail(cls, rule_id: str) -> str:
        return f"{cls.PREFIX}:rules:detail:{rule_id}"

    @classmethod
    def rule_workspace_index(cls, workspace_id: str) -> str:
        return f"{cls.PREFIX}:rules:workspace:{workspace_id}"

    @classmethod
    def rule_trigger_index(cls, trigger_type: str) -> str:
        return f"{cls.PREFIX}:rules:trigger:{trigger_type}"

    @classmethod
    def escalation_detail(cls, rule_id: str) -> str:
        return f"{cls.PREFIX}:escalations:detail:{rule_id}"

    @classmethod
    def escalation_workspace_index(cls, workspace_id: str) -> str:
        return f"{cls.PREFIX}:escalations:workspace:{workspace_id}"

    # Escalation progress of one (item, rule) pair, plus reverse indexes for cleanup
    @classmethod
    def state(cls, item_id: str, rule_id: str) -> str:
        return f"{cls.PREFIX}:state:{item_id}:{rule_id}"

    @classmethod
    def state_item_index(cls, item_id: str) -> str:
        return f"{cls.PREFIX}:state:item:{item_id}"

    @classmethod
    def state_rule_index(cls, rule_id: str) -> str:
        return f"{cls.PREFIX}:state:rule:{rule_id}"

    @classmethod
    def activity_rule(cls, rule_id: str) -> str:
        return f"{cls.PREFIX}:activity:rule:{rule_id}"

    @classmethod
    def activity_item(cls, item_id: str) -> str:
        return f"{cls.PREFIX}:activity:item:{item_id}"

    @classmethod
    def processed(cls, event_id: str) -> str:
        return f"{cls.PREFIX}:processed:{event_id}"

    @classmethod
    def item_lock(cls, item_id: str) -> str:
        return f"{cls.PREFIX}:lock:item:{item_id}"
