"""Tests for rule matching."""

from datetime import timedelta

from escalator.core.clock import utcnow
from escalator.engine.expression import ConditionEvaluator
from escalator.engine.matcher import RuleMatcher
from escalator.models.escalation import ESCALATION_LEVEL, SLA_LEVEL, EscalationRule
from escalator.models.event import CanonicalEvent, EventKind
from escalator.models.item import ItemType
from escalator.models.rule import Rule
from tests.conftest import NOW, make_task


def make_rule(rule_id: str, trigger: dict, item_type: str = "TASK", is_active: bool = True) -> Rule:
    return Rule.model_validate({
        "rule_id": rule_id,
        "workspace_id": "ws_team",
        "item_type": item_type,
        "name": rule_id,
        "is_active": is_active,
        "trigger": trigger,
        "action": {"type": "ADD_TAG", "tag": "flagged"},
    })


def status_event(from_status: str, to_status: str, **payload) -> CanonicalEvent:
    return CanonicalEvent(
        item_id="task_1",
        item_type=ItemType.TASK,
        workspace_id="ws_team",
        event_kind=EventKind.STATUS_CHANGED,
        from_status=from_status,
        to_status=to_status,
        payload={"id": "task_1", "status": to_status, **payload},
    )


def test_status_changed_matches_target_status() -> None:
    matcher = RuleMatcher()
    blocked = make_rule("blocked", {"type": "STATUS_CHANGED", "to_status": "BLOCKED"})
    review = make_rule("review", {"type": "STATUS_CHANGED", "to_status": "REVIEW_REQUIRED"})

    matched = matcher.match(status_event("IN_PROGRESS", "BLOCKED"), [blocked, review], NOW)

    assert matched == [blocked]


def test_from_status_narrows_the_match() -> None:
    matcher = RuleMatcher()
    rule = make_rule(
        "unblocked",
        {"type": "STATUS_CHANGED", "from_status": "BLOCKED", "to_status": "IN_PROGRESS"},
    )

    assert matcher.match(status_event("BLOCKED", "IN_PROGRESS"), [rule], NOW) == [rule]
    assert matcher.match(status_event("NOT_STARTED", "IN_PROGRESS"), [rule], NOW) == []


def test_inactive_and_other_item_type_rules_never_match() -> None:
    matcher = RuleMatcher()
    inactive = make_rule("inactive", {"type": "STATUS_CHANGED", "to_status": "BLOCKED"}, is_active=False)
    budget = make_rule(
        "budget", {"type": "STATUS_CHANGED", "to_status": "APPROVED"}, item_type="BUDGET_REQUEST"
    )

    assert matcher.match(status_event("IN_PROGRESS", "BLOCKED"), [inactive, budget], NOW) == []


def test_item_created_matches_only_creation() -> None:
    matcher = RuleMatcher()
    rule = make_rule("created", {"type": "ITEM_CREATED"})
    created = CanonicalEvent(
        item_id="task_1",
        item_type=ItemType.TASK,
        workspace_id="ws_team",
        event_kind=EventKind.CREATED,
        to_status="NOT_STARTED",
    )

    assert matcher.match(created, [rule], NOW) == [rule]
    assert matcher.match(status_event("NOT_STARTED", "IN_PROGRESS"), [rule], NOW) == []


def test_condition_filters_on_item_snapshot() -> None:
    matcher = RuleMatcher()
    rule = make_rule(
        "urgent_blocked",
        {"type": "STATUS_CHANGED", "to_status": "BLOCKED", "condition": "priority == 'URGENT'"},
    )

    assert matcher.match(status_event("IN_PROGRESS", "BLOCKED", priority="URGENT"), [rule], NOW) == [rule]
    assert matcher.match(status_event("IN_PROGRESS", "BLOCKED", priority="LOW"), [rule], NOW) == []


def test_condition_error_means_no_match() -> None:
    matcher = RuleMatcher()
    rule = make_rule(
        "broken",
        {"type": "STATUS_CHANGED", "to_status": "BLOCKED", "condition": "missing_field > 3"},
    )

    assert matcher.match(status_event("IN_PROGRESS", "BLOCKED"), [rule], NOW) == []


def test_due_date_rule_matches_inside_window_only() -> None:
    matcher = RuleMatcher()
    rule = make_rule("due", {"type": "DUE_DATE_APPROACHING", "hours_before_due": 24})

    soon = make_task(due_date=NOW + timedelta(hours=5))
    later = make_task(due_date=NOW + timedelta(hours=30))
    overdue = make_task(due_date=NOW - timedelta(hours=1))

    def timer(item):
        return CanonicalEvent.for_timer(item, EventKind.DUE_DATE_APPROACHING, "due", 1, NOW)

    assert matcher.match(timer(soon), [rule], NOW) == [rule]
    assert matcher.match(timer(later), [rule], NOW) == []
    assert matcher.match(timer(overdue), [rule], NOW) == []


def test_status_change_never_matches_due_date_rule() -> None:
    matcher = RuleMatcher()
    rule = make_rule("due", {"type": "DUE_DATE_APPROACHING", "hours_before_due": 24})
    event = status_event("IN_PROGRESS", "BLOCKED", due_date=(NOW + timedelta(hours=2)).isoformat())

    assert matcher.match(event, [rule], NOW) == []


def test_timer_event_matches_only_its_rule_and_level() -> None:
    matcher = RuleMatcher()
    escalation = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
        sla_hours=72,
    )
    other = EscalationRule(
        rule_id="esc_2",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
    )
    item = make_task(age_hours=30)
    event = CanonicalEvent.for_timer(item, EventKind.ESCALATION_DUE, "esc_1", ESCALATION_LEVEL, NOW)

    level_one = escalation.to_rule(ESCALATION_LEVEL)
    level_two = escalation.to_rule(SLA_LEVEL)

    assert matcher.match(event, [level_one, level_two, other.to_rule(ESCALATION_LEVEL)], NOW) == [level_one]


def test_condition_helpers_cover_tags_and_due_dates() -> None:
    evaluator = ConditionEvaluator()
    snapshot = make_task(tags=["vip"], due_date=utcnow() + timedelta(hours=6)).model_dump(mode="json")

    assert evaluator.evaluate("'vip' in tags and hours_until(due_date) < 12", snapshot)
    assert not evaluator.evaluate("priority == 'URGENT' or due_date is None", snapshot)


def test_condition_validation_rejects_unknown_functions() -> None:
    evaluator = ConditionEvaluator()

    assert evaluator.validate("hours_until(due_date) < 24") == (True, None)
    assert evaluator.validate("open('/etc/passwd')")[0] is False
    assert evaluator.validate("priority ==")[0] is False


def test_timer_events_without_a_rule_match_nothing() -> None:
    matcher = RuleMatcher()
    due = make_rule("due", {"type": "DUE_DATE_APPROACHING", "hours_before_due": 24})
    elapsed = EscalationRule(
        rule_id="esc_1",
        workspace_id="ws_team",
        item_type=ItemType.TASK,
        trigger_after_hours=24,
    ).to_rule(ESCALATION_LEVEL)
    item = make_task(due_date=NOW + timedelta(hours=5), age_hours=30)

    unbound_due = CanonicalEvent.for_timer(item, EventKind.DUE_DATE_APPROACHING, "due", 1, NOW).model_copy(
        update={"rule_id": None}
    )
    unbound_escalation = CanonicalEvent.for_timer(
        item, EventKind.ESCALATION_DUE, "esc_1", ESCALATION_LEVEL, NOW
    ).model_copy(update={"rule_id": None})

    assert matcher.match(unbound_due, [due, elapsed], NOW) == []
    assert matcher.match(unbound_escalation, [due, elapsed], NOW) == []
