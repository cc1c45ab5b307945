"""Tests for rule, escalation and state models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from escalator.models.escalation import (
    ESCALATION_LEVEL,
    SLA_LEVEL,
    EscalationRule,
    EscalationState,
    EscalationStatus,
)
from escalator.models.item import EscalateTo, ItemType
from escalator.models.notification import NotificationPriority
from escalator.models.rule import (
    ReassignAction,
    Rule,
    RuleSource,
    SendNotificationAction,
    TimeElapsedTrigger,
    TriggerType,
)
from tests.conftest import NOW, make_task


def rule_data(**overrides) -> dict:
    data = {
        "rule_id": "rule_1",
        "workspace_id": "ws_team",
        "item_type": "TASK",
        "name": "Notify on block",
        "trigger": {"type": "STATUS_CHANGED", "to_status": "blocked"},
        "action": {"type": "SEND_NOTIFICATION", "title": "{title} is blocked"},
    }
    data.update(overrides)
    return data


def test_rule_derives_trigger_and_action_types() -> None:
    rule = Rule.model_validate(rule_data())

    assert rule.trigger_type == TriggerType.STATUS_CHANGED
    assert rule.trigger.to_status == "BLOCKED"
    assert isinstance(rule.action, SendNotificationAction)


def test_rule_rejects_status_unknown_for_item_type() -> None:
    with pytest.raises(ValidationError, match="APPROVED"):
        Rule.model_validate(rule_data(trigger={"type": "STATUS_CHANGED", "to_status": "APPROVED"}))


def test_rule_rejects_trigger_config_of_another_kind() -> None:
    with pytest.raises(ValidationError):
        Rule.model_validate(rule_data(trigger={"type": "STATUS_CHANGED", "hours_before_due": 24}))


def test_rule_rejects_identical_from_and_to_status() -> None:
    with pytest.raises(ValidationError, match="must differ"):
        Rule.model_validate(
            rule_data(trigger={"type": "STATUS_CHANGED", "from_status": "BLOCKED", "to_status": "BLOCKED"})
        )


def test_rule_rejects_unparseable_condition() -> None:
    with pytest.raises(ValidationError, match="condition"):
        Rule.model_validate(
            rule_data(trigger={"type": "ITEM_CREATED", "condition": "priority =="})
        )


def test_due_date_lead_time_is_bounded() -> None:
    with pytest.raises(ValidationError):
        Rule.model_validate(rule_data(trigger={"type": "DUE_DATE_APPROACHING", "hours_before_due": 169}))


def test_reassign_is_reserved_for_escalation_rules() -> None:
    with pytest.raises(ValidationError, match="reserved"):
        Rule.model_validate(rule_data(action={"type": "REASSIGN", "escalate_to": "PARENT"}))


def test_blank_tag_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Rule.model_validate(rule_data(action={"type": "ADD_TAG", "tag": "   "}))


def test_sla_shorter_than_trigger_is_rejected() -> None:
    with pytest.raises(ValidationError, match="sla_hours"):
        EscalationRule(
            rule_id="esc_1",
            workspace_id="ws_team",
            item_type=ItemType.TASK,
            trigger_after_hours=48,
            sla_hours=24,
        )


def test_escalation_path_must_not_repeat() -> None:
    with pytest.raises(ValidationError):
        EscalationRule(
            rule_id="esc_1",
            workspace_id="ws_team",
            item_type=ItemType.TASK,
            trigger_after_hours=24,
            escalation_path=["ws_dept", "ws_dept"],
        )


def test_due_level_reports_highest_reached_level() -> None:
    rule = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
        sla_hours=72,
    )

    assert rule.due_level(10) == 0
    assert rule.due_level(24) == ESCALATION_LEVEL
    assert rule.due_level(80) == SLA_LEVEL


def test_escalation_rule_builds_level_specific_rules() -> None:
    rule = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
        sla_hours=72,
        notify_roles=["LEAD"],
    )

    first = rule.to_rule(ESCALATION_LEVEL)
    breach = rule.to_rule(SLA_LEVEL)

    assert first.source == RuleSource.ESCALATION
    assert first.trigger == TimeElapsedTrigger(after_hours=24, level=1)
    assert first.action.priority == NotificationPriority.HIGH
    assert breach.trigger.after_hours == 72
    assert breach.action.priority == NotificationPriority.URGENT
    assert breach.action.notify_roles == ["LEAD"]


def test_auto_reassign_rule_builds_reassign_action() -> None:
    rule = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.BUDGET_REQUEST,
        trigger_after_hours=12,
        escalate_to=EscalateTo.DEPARTMENT,
        auto_reassign=True,
    )

    action = rule.to_rule(ESCALATION_LEVEL).action

    assert isinstance(action, ReassignAction)
    assert action.escalate_to == EscalateTo.DEPARTMENT


def test_sla_level_requires_sla_hours() -> None:
    rule = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
    )

    with pytest.raises(ValueError):
        rule.to_rule(SLA_LEVEL)


def test_state_guard_blocks_refire_and_honours_cooldown() -> None:
    state = EscalationState(item_id="task_1", rule_id="esc_1")
    assert state.can_fire(ESCALATION_LEVEL, NOW, cooldown_seconds=300)

    fired = state.advance(ESCALATION_LEVEL, NOW)
    assert fired.status == EscalationStatus.TRIGGERED
    assert not fired.can_fire(ESCALATION_LEVEL, NOW + timedelta(days=1), cooldown_seconds=300)
    assert not fired.can_fire(SLA_LEVEL, NOW + timedelta(seconds=60), cooldown_seconds=300)
    assert fired.can_fire(SLA_LEVEL, NOW + timedelta(seconds=301), cooldown_seconds=300)


def test_resolved_state_behaves_like_fresh_state() -> None:
    state = EscalationState(item_id="task_1", rule_id="esc_1").advance(SLA_LEVEL, NOW).resolve(NOW)

    assert state.is_resolved
    assert state.can_fire(ESCALATION_LEVEL, NOW, cooldown_seconds=300)
    assert state.advance(ESCALATION_LEVEL, NOW).level == ESCALATION_LEVEL


def test_state_cannot_move_backwards() -> None:
    state = EscalationState(item_id="task_1", rule_id="esc_1").advance(SLA_LEVEL, NOW)

    with pytest.raises(ValueError):
        state.advance(ESCALATION_LEVEL, NOW)


def test_clock_starts_at_last_status_change() -> None:
    changed_at = NOW - timedelta(hours=2)
    task = make_task(age_hours=50, status_changed_at=changed_at)

    assert task.clock_started_at == changed_at
    assert make_task(age_hours=50).clock_started_at == NOW - timedelta(hours=50)
