"""Persistence for automation and escalation rule definitions.

Each definition lives in a hash (``config`` holds the JSON document) and is
listed in a set of index keys. Definition writes and their index changes go
through one MULTI/EXEC, so readers never see a rule missing from an index it
belongs to.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, Iterable, TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.asyncio.client import Pipeline

from escalator.core.clock import utcnow
from escalator.core.logging import get_logger
from escalator.models.item import ItemType
from escalator.models.rule import Rule, TriggerType
from escalator.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)

R = TypeVar("R", bound=BaseModel)


class DefinitionStore(ABC, Generic[R]):
    """CRUD over one kind of rule definition.

    Subclasses name the model, the detail key and the index keys a
    definition belongs to. The authoring API is the only writer; the engine
    only reads.
    """

    model: ClassVar[type[BaseModel]]
    kind: ClassVar[str]
    all_key: ClassVar[str]

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    @abstractmethod
    def _detail_key(self, rule_id: str) -> str:
        """Hash key holding one definition."""

    @abstractmethod
    def _index_keys(self, rule: R) -> set[str]:
        """Index sets the definition is listed in."""

    async def create(self, rule: R) -> R:
        async with self.redis.pipeline(transaction=True) as pipe:
            self._queue_write(pipe, rule)
            pipe.sadd(self.all_key, rule.rule_id)
            for key in self._index_keys(rule):
                pipe.sadd(key, rule.rule_id)
            await pipe.execute()
        await self._announce("create", rule.rule_id)
        return rule

    async def get(self, rule_id: str) -> R | None:
        """Load a definition; stored documents that no longer validate read as missing."""
        data = await self.redis.hget(self._detail_key(rule_id), "config")
        if not data:
            return None
        try:
            return self.model.model_validate_json(data)
        except ValidationError as e:
            logger.warning("Skipping invalid stored rule", kind=self.kind, rule_id=rule_id, error=str(e))
            return None

    async def update(self, rule_id: str, rule: R) -> R | None:
        """Replace a definition, keeping its creation stamp and bumping its version."""
        existing = await self.get(rule_id)
        if existing is None:
            return None

        rule.metadata.created_at = existing.metadata.created_at
        rule.metadata.created_by = existing.metadata.created_by
        rule.metadata.updated_at = utcnow()
        rule.metadata.version = existing.metadata.version + 1

        old_keys, new_keys = self._index_keys(existing), self._index_keys(rule)
        async with self.redis.pipeline(transaction=True) as pipe:
            for key in old_keys - new_keys:
                pipe.srem(key, rule_id)
            for key in new_keys - old_keys:
                pipe.sadd(key, rule_id)
            self._queue_write(pipe, rule)
            await pipe.execute()
        await self._announce("update", rule_id)
        return rule

    async def patch(self, rule_id: str, changes: dict[str, Any]) -> R | None:
        """Merge ``changes`` into a definition.

        Raises:
            ValidationError: If the merged definition is not valid
        """
        existing = await self.get(rule_id)
        if existing is None:
            return None
        merged = {**existing.model_dump(), **changes, "rule_id": rule_id}
        return await self.update(rule_id, self.model.model_validate(merged))

    async def delete(self, rule_id: str) -> bool:
        existing = await self.get(rule_id)
        if existing is None:
            return False
        async with self.redis.pipeline(transaction=True) as pipe:
            for key in self._index_keys(existing):
                pipe.srem(key, rule_id)
            pipe.srem(self.all_key, rule_id)
            pipe.delete(self._detail_key(rule_id))
            await pipe.execute()
        await self._announce("delete", rule_id)
        return True

    async def set_active(self, rule_id: str, is_active: bool) -> bool:
        rule = await self.get(rule_id)
        if rule is None:
            return False
        rule.is_active = is_active
        rule.metadata.updated_at = utcnow()
        async with self.redis.pipeline(transaction=True) as pipe:
            self._queue_write(pipe, rule)
            await pipe.execute()
        await self._announce("update", rule_id)
        return True

    async def list_all(self) -> list[R]:
        return await self._load(await self.redis.smembers(self.all_key))

    async def get_version(self) -> int:
        """Counter bumped on every definition change of any kind."""
        version = await self.redis.get(RedisKeys.RULE_VERSION)
        return int(version) if version else 0

    async def _load(self, rule_ids: Iterable[str]) -> list[R]:
        rules = [await self.get(rule_id) for rule_id in rule_ids]
        return [rule for rule in rules if rule is not None]

    def _queue_write(self, pipe: Pipeline, rule: R) -> None:
        pipe.hset(
            self._detail_key(rule.rule_id),
            mapping={
                "config": rule.model_dump_json(),
                "is_active": str(rule.is_active).lower(),
                "version": str(rule.metadata.version),
                "updated_at": str(int(rule.metadata.updated_at.timestamp() * 1000)),
            },
        )

    async def _announce(self, action: str, rule_id: str) -> None:
        await self.redis.incr(RedisKeys.RULE_VERSION)
        message = {
            "action": action,
            "rule_id": rule_id,
            "kind": self.kind,
            "timestamp": int(utcnow().timestamp() * 1000),
        }
        await self.redis.publish(RedisKeys.RULE_UPDATE_CHANNEL, json.dumps(message))


class RuleStore(DefinitionStore[Rule]):
    """Automation rules, indexed by workspace and by trigger type."""

    model = Rule
    kind = "automation"
    all_key = RedisKeys.RULE_ALL

    def _detail_key(self, rule_id: str) -> str:
        return RedisKeys.rule_detail(rule_id)

    def _index_keys(self, rule: Rule) -> set[str]:
        return {
            RedisKeys.rule_workspace_index(rule.workspace_id),
            RedisKeys.rule_trigger_index(rule.trigger_type.value),
        }

    async def list_by_workspace(
        self,
        workspace_id: str,
        item_type: ItemType | None = None,
        include_inactive: bool = True,
    ) -> list[Rule]:
        """Rules of a workspace in creation order."""
        rule_ids = await self.redis.smembers(RedisKeys.rule_workspace_index(workspace_id))
        rules = [
            r for r in await self._load(rule_ids)
            if (item_type is None or r.item_type == item_type)
            and (include_inactive or r.is_active)
        ]
        rules.sort(key=lambda r: r.metadata.created_at)
        return rules

    async def list_active(self, workspace_id: str, item_type: ItemType) -> list[Rule]:
        return await self.list_by_workspace(workspace_id, item_type, include_inactive=False)

    async def list_by_trigger(self, trigger_type: TriggerType) -> list[Rule]:
        """Active rules of one trigger type across all workspaces."""
        rule_ids = await self.redis.smembers(RedisKeys.rule_trigger_index(trigger_type.value))
        return [r for r in await self._load(rule_ids) if r.is_active]
