"""Escalation rule storage."""

from escalator.models.escalation import EscalationRule
from escalator.models.item import ItemType
from escalator.storage.redis_client import RedisKeys
from escalator.storage.rule_store import DefinitionStore


class EscalationRuleStore(DefinitionStore[EscalationRule]):
    """Escalation rules, indexed by workspace."""

    model = EscalationRule
    kind = "escalation"
    all_key = RedisKeys.ESCALATION_ALL

    def _detail_key(self, rule_id: str) -> str:
        return RedisKeys.escalation_detail(rule_id)

    def _index_keys(self, rule: EscalationRule) -> set[str]:
        return {RedisKeys.escalation_workspace_index(rule.workspace_id)}

    async def list_by_workspace(
        self,
        workspace_id: str,
        item_type: ItemType | None = None,
    ) -> list[EscalationRule]:
        """Escalation rules of a workspace ordered by item type."""
        rule_ids = await self.redis.smembers(RedisKeys.escalation_workspace_index(workspace_id))
        rules = [
            r for r in await self._load(rule_ids)
            if item_type is None or r.item_type == item_type
        ]
        rules.sort(key=lambda r: (r.item_type.value, r.metadata.created_at))
        return rules

    async def list_active(self) -> list[EscalationRule]:
        """Active escalation rules across all workspaces."""
        return [r for r in await self.list_all() if r.is_active]
