"""Tests for the Redis-backed stores."""

import asyncio
from datetime import timedelta

import pytest
from fakeredis import FakeAsyncRedis
from pydantic import ValidationError

from escalator.models.activity import ActivityLogEntry, Outcome
from escalator.models.escalation import ESCALATION_LEVEL, SLA_LEVEL, EscalationRule, StateSource
from escalator.models.item import ItemType
from escalator.models.rule import Rule, TriggerType
from escalator.storage.activity_log import ActivityLog
from escalator.storage.auxiliary import IdempotencyStore
from escalator.storage.escalation_store import EscalationRuleStore
from escalator.storage.rule_store import DefinitionStore, RuleStore
from escalator.storage.state_store import EscalationStateStore
from tests.conftest import NOW


def make_rule(rule_id: str, workspace_id: str = "ws_team", **overrides) -> Rule:
    data = {
        "rule_id": rule_id,
        "workspace_id": workspace_id,
        "item_type": "TASK",
        "name": rule_id,
        "trigger": {"type": "STATUS_CHANGED", "to_status": "BLOCKED"},
        "action": {"type": "ADD_TAG", "tag": "blocked"},
    }
    data.update(overrides)
    return Rule.model_validate(data)


def make_entry(entry_id: str, rule_id: str = "rule_1", item_id: str = "task_1") -> ActivityLogEntry:
    return ActivityLogEntry(
        entry_id=entry_id,
        rule_id=rule_id,
        item_id=item_id,
        item_type=ItemType.TASK,
        event_id="evt_1",
        event_kind="STATUS_CHANGED",
        action_taken="ADD_TAG",
        outcome=Outcome.APPLIED,
    )


class TestRuleStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, rule_store: RuleStore) -> None:
        await rule_store.create(make_rule("rule_1"))

        rule = await rule_store.get("rule_1")

        assert rule.name == "rule_1"
        assert rule.trigger.to_status == "BLOCKED"
        assert await rule_store.get("missing") is None

    @pytest.mark.asyncio
    async def test_list_active_filters_workspace_type_and_state(self, rule_store: RuleStore) -> None:
        await rule_store.create(make_rule("rule_1"))
        await rule_store.create(make_rule("rule_2", is_active=False))
        await rule_store.create(make_rule("rule_3", workspace_id="ws_dept"))
        await rule_store.create(make_rule(
            "rule_4",
            item_type="BUDGET_REQUEST",
            trigger={"type": "STATUS_CHANGED", "to_status": "APPROVED"},
        ))

        active = await rule_store.list_active("ws_team", ItemType.TASK)

        assert [r.rule_id for r in active] == ["rule_1"]
        assert len(await rule_store.list_by_workspace("ws_team")) == 3

    @pytest.mark.asyncio
    async def test_update_moves_indexes_and_bumps_version(self, rule_store: RuleStore) -> None:
        await rule_store.create(make_rule("rule_1"))
        replacement = make_rule(
            "rule_1",
            workspace_id="ws_dept",
            trigger={"type": "DUE_DATE_APPROACHING", "hours_before_due": 12},
        )

        updated = await rule_store.update("rule_1", replacement)

        assert updated.metadata.version == 2
        assert await rule_store.list_by_workspace("ws_team") == []
        due_rules = await rule_store.list_by_trigger(TriggerType.DUE_DATE_APPROACHING)
        assert [r.rule_id for r in due_rules] == ["rule_1"]
        assert await rule_store.list_by_trigger(TriggerType.STATUS_CHANGED) == []

    @pytest.mark.asyncio
    async def test_patch_revalidates(self, rule_store: RuleStore) -> None:
        await rule_store.create(make_rule("rule_1"))

        patched = await rule_store.patch("rule_1", {"name": "Renamed"})
        assert patched.name == "Renamed"

        with pytest.raises(ValidationError):
            await rule_store.patch("rule_1", {"trigger": {"type": "STATUS_CHANGED", "to_status": "APPROVED"}})

    @pytest.mark.asyncio
    async def test_delete_and_toggle(self, rule_store: RuleStore) -> None:
        await rule_store.create(make_rule("rule_1"))

        assert await rule_store.set_active("rule_1", False)
        assert (await rule_store.get("rule_1")).is_active is False
        assert await rule_store.delete("rule_1")
        assert await rule_store.get("rule_1") is None
        assert not await rule_store.delete("rule_1")
        assert not await rule_store.set_active("rule_1", True)

    @pytest.mark.asyncio
    async def test_writes_bump_global_version(self, rule_store: RuleStore) -> None:
        before = await rule_store.get_version()
        await rule_store.create(make_rule("rule_1"))
        await rule_store.set_active("rule_1", False)

        assert await rule_store.get_version() == before + 2


class TestEscalationRuleStore:
    @pytest.mark.asyncio
    async def test_list_active_spans_workspaces(self, escalation_store: EscalationRuleStore) -> None:
        for rule_id, workspace_id in (("esc_1", "ws_team"), ("esc_2", "ws_dept")):
            await escalation_store.create(EscalationRule(
                rule_id=rule_id,
                workspace_id=workspace_id,
                item_type=ItemType.TASK,
                trigger_after_hours=24,
            ))
        await escalation_store.set_active("esc_2", False)

        assert [r.rule_id for r in await escalation_store.list_active()] == ["esc_1"]
        assert [r.rule_id for r in await escalation_store.list_by_workspace("ws_dept")] == ["esc_2"]

    @pytest.mark.asyncio
    async def test_patch_keeps_sla_invariant(self, escalation_store: EscalationRuleStore) -> None:
        await escalation_store.create(EscalationRule(
            rule_id="esc_1",
            workspace_id="ws_team",
            item_type=ItemType.TASK,
            trigger_after_hours=24,
            sla_hours=48,
        ))

        with pytest.raises(ValidationError):
            await escalation_store.patch("esc_1", {"trigger_after_hours": 72})

        patched = await escalation_store.patch("esc_1", {"sla_hours": 96})
        assert patched.sla_hours == 96
        assert patched.metadata.version == 2


class TestEscalationStateStore:
    @pytest.mark.asyncio
    async def test_claim_is_granted_once(self, state_store: EscalationStateStore) -> None:
        first = await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300)
        second = await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300)

        assert first is not None
        assert first.previous is None
        assert second is None

    @pytest.mark.asyncio
    async def test_claim_respects_cooldown(self, state_store: EscalationStateStore) -> None:
        await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300)

        early = await state_store.claim("task_1", "esc_1", SLA_LEVEL, NOW + timedelta(seconds=30), 300)
        late = await state_store.claim("task_1", "esc_1", SLA_LEVEL, NOW + timedelta(minutes=10), 300)

        assert early is None
        assert late is not None
        assert late.previous.level == ESCALATION_LEVEL

    @pytest.mark.asyncio
    async def test_release_restores_previous_state(self, state_store: EscalationStateStore) -> None:
        await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 0)
        claim = await state_store.claim("task_1", "esc_1", SLA_LEVEL, NOW + timedelta(hours=1), 0)

        assert await state_store.release(claim)
        assert (await state_store.get("task_1", "esc_1")).level == ESCALATION_LEVEL
        assert not await state_store.release(claim)

    @pytest.mark.asyncio
    async def test_concurrent_claims_yield_one_winner(self, redis: FakeAsyncRedis) -> None:
        stores = [EscalationStateStore(redis) for _ in range(5)]

        claims = await asyncio.gather(
            *(store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300) for store in stores)
        )

        assert sum(claim is not None for claim in claims) == 1

    @pytest.mark.asyncio
    async def test_reset_item_by_source(self, state_store: EscalationStateStore) -> None:
        await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300)
        await state_store.claim("task_1", "rule_due", 1, NOW, 300, source=StateSource.DUE_DATE)

        assert await state_store.reset_item("task_1", StateSource.DUE_DATE) == 1
        assert [s.rule_id for s in await state_store.list_for_item("task_1")] == ["esc_1"]

    @pytest.mark.asyncio
    async def test_resolve_item_and_purge(self, state_store: EscalationStateStore) -> None:
        await state_store.claim("task_1", "esc_1", ESCALATION_LEVEL, NOW, 300)
        await state_store.claim("task_2", "esc_1", ESCALATION_LEVEL, NOW, 300)

        assert await state_store.resolve_item("task_1", NOW) == 1
        assert await state_store.resolve_item("task_1", NOW) == 0
        assert (await state_store.get("task_1", "esc_1")).is_resolved

        assert await state_store.purge_rule("esc_1") == 2
        assert await state_store.list_for_item("task_2") == []


class TestActivityLog:
    @pytest.mark.asyncio
    async def test_entries_are_indexed_by_rule_and_item(self, activity_log: ActivityLog) -> None:
        await activity_log.append(make_entry("act_1"))
        await activity_log.append(make_entry("act_2", rule_id="rule_2"))

        assert [e.entry_id for e in await activity_log.list_for_item("task_1")] == ["act_2", "act_1"]
        assert [e.entry_id for e in await activity_log.list_for_rule("rule_1")] == ["act_1"]
        assert await activity_log.count_for_item("task_1") == 2

    @pytest.mark.asyncio
    async def test_log_is_capped(self, redis: FakeAsyncRedis) -> None:
        log = ActivityLog(redis, max_entries=3)
        for i in range(5):
            await log.append(make_entry(f"act_{i}"))

        entries = await log.list_for_rule("rule_1", limit=10)

        assert [e.entry_id for e in entries] == ["act_4", "act_3", "act_2"]


class TestIdempotencyStore:
    @pytest.mark.asyncio
    async def test_mark_and_unmark(self, redis: FakeAsyncRedis) -> None:
        store = IdempotencyStore(redis, ttl_seconds=60)

        assert await store.mark_processed("evt_1")
        assert not await store.mark_processed("evt_1")
        assert await store.is_processed("evt_1")

        await store.unmark("evt_1")
        assert await store.mark_processed("evt_1")


def test_definition_store_requires_key_layout() -> None:
    class Untyped(DefinitionStore[Rule]):
        model = Rule
        kind = "untyped"
        all_key = "untyped:all"

    with pytest.raises(TypeError):
        Untyped(FakeAsyncRedis())
