"""Escalation state storage with a transactional claim guard."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from redis.asyncio import Redis
from redis.exceptions import WatchError

from escalator.core.logging import get_logger
from escalator.models.escalation import EscalationState, StateSource
from escalator.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)

# Returned by a mutator to leave the stored state untouched
_UNCHANGED = object()


@dataclass
class EscalationClaim:
    """A reserved firing of one (item, rule, level)."""

    previous: EscalationState | None
    current: EscalationState


class EscalationStateStore:
    """Per (item, rule) escalation state in Redis.

    Every transition runs under WATCH/MULTI so that concurrent scanner
    workers cannot both claim the same level.
    """

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def get(self, item_id: str, rule_id: str) -> EscalationState | None:
        """Get the state for an (item, rule) pair."""
        raw = await self.redis.hget(RedisKeys.state(item_id, rule_id), "state")
        return EscalationState.model_validate_json(raw) if raw else None

    async def list_for_item(self, item_id: str) -> list[EscalationState]:
        """List all states recorded for an item."""
        rule_ids = await self.redis.smembers(RedisKeys.state_item_index(item_id))
        states = []
        for rule_id in sorted(rule_ids):
            state = await self.get(item_id, rule_id)
            if state:
                states.append(state)
        return states

    async def claim(
        self,
        item_id: str,
        rule_id: str,
        level: int,
        now: datetime,
        cooldown_seconds: int,
        source: StateSource = StateSource.ESCALATION,
    ) -> EscalationClaim | None:
        """Atomically reserve the firing of ``level`` for an (item, rule) pair.

        Returns:
            The claim, or None if the level already fired or the pair is in
            cooldown
        """
        claim: EscalationClaim | None = None

        def mutate(previous: EscalationState | None) -> object:
            nonlocal claim
            base = previous or EscalationState(item_id=item_id, rule_id=rule_id, source=source)
            if not base.can_fire(level, now, cooldown_seconds):
                claim = None
                return _UNCHANGED
            current = base.advance(level, now)
            claim = EscalationClaim(previous=previous, current=current)
            return current

        await self._transition(item_id, rule_id, mutate)
        return claim

    async def release(self, claim: EscalationClaim) -> bool:
        """Undo a claim whose action failed transiently.

        The previous state is restored only if nobody advanced the pair since.

        Returns:
            True if the claim was rolled back
        """
        released = False
        current = claim.current

        def mutate(stored: EscalationState | None) -> object:
            nonlocal released
            if stored is None or stored != current:
                released = False
                return _UNCHANGED
            released = True
            return claim.previous

        await self._transition(current.item_id, current.rule_id, mutate)
        return released

    async def resolve(self, item_id: str, rule_id: str, now: datetime) -> bool:
        """Mark an open state resolved.

        Returns:
            True if a state changed
        """
        changed = False

        def mutate(stored: EscalationState | None) -> object:
            nonlocal changed
            if stored is None or stored.is_resolved:
                changed = False
                return _UNCHANGED
            changed = True
            return stored.resolve(now)

        await self._transition(item_id, rule_id, mutate)
        return changed

    async def resolve_item(
        self,
        item_id: str,
        now: datetime,
        source: StateSource | None = None,
    ) -> int:
        """Resolve every open state of an item.

        Returns:
            Number of states resolved
        """
        count = 0
        for state in await self.list_for_item(item_id):
            if source is not None and state.source != source:
                continue
            if await self.resolve(item_id, state.rule_id, now):
                count += 1
        return count

    async def reset(self, item_id: str, rule_id: str) -> bool:
        """Forget the state of an (item, rule) pair so it can fire again."""
        deleted = await self.redis.delete(RedisKeys.state(item_id, rule_id))
        await self.redis.srem(RedisKeys.state_item_index(item_id), rule_id)
        await self.redis.srem(RedisKeys.state_rule_index(rule_id), item_id)
        return deleted > 0

    async def reset_item(self, item_id: str, source: StateSource | None = None) -> int:
        """Forget all states of an item, optionally only one source."""
        count = 0
        for state in await self.list_for_item(item_id):
            if source is not None and state.source != source:
                continue
            if await self.reset(item_id, state.rule_id):
                count += 1
        return count

    async def purge_item(self, item_id: str) -> int:
        """Cascade delete for a deleted item."""
        count = await self.reset_item(item_id)
        await self.redis.delete(RedisKeys.state_item_index(item_id))
        return count

    async def purge_rule(self, rule_id: str) -> int:
        """Cascade delete for a deleted rule."""
        item_ids = await self.redis.smembers(RedisKeys.state_rule_index(rule_id))
        count = 0
        for item_id in item_ids:
            if await self.reset(item_id, rule_id):
                count += 1
        await self.redis.delete(RedisKeys.state_rule_index(rule_id))
        return count

    async def _transition(
        self,
        item_id: str,
        rule_id: str,
        mutate: Callable[[EscalationState | None], object],
    ) -> None:
        """Read-modify-write a state under optimistic locking.

        ``mutate`` returns the new state, None to delete, or _UNCHANGED.
        It may run more than once if another writer interferes.
        """
        key = RedisKeys.state(item_id, rule_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hget(key, "state")
                    stored = EscalationState.model_validate_json(raw) if raw else None

                    result = mutate(stored)
                    if result is _UNCHANGED:
                        await pipe.unwatch()
                        return

                    pipe.multi()
                    if result is None:
                        pipe.delete(key)
                        pipe.srem(RedisKeys.state_item_index(item_id), rule_id)
                        pipe.srem(RedisKeys.state_rule_index(rule_id), item_id)
                    else:
                        pipe.hset(key, "state", result.model_dump_json())
                        pipe.sadd(RedisKeys.state_item_index(item_id), rule_id)
                        pipe.sadd(RedisKeys.state_rule_index(rule_id), item_id)
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug("Escalation state contention, retrying", item_id=item_id, rule_id=rule_id)
                    continue
