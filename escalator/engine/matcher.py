"""Rule matcher: selects the active rules whose trigger fits an event."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import TypeAdapter, ValidationError

from escalator.core.clock import as_utc, hours_between, utcnow
from escalator.core.logging import get_logger
from escalator.engine.expression import evaluate_expression
from escalator.models.event import CanonicalEvent, EventKind
from escalator.models.escalation import ESCALATION_LEVEL, SLA_LEVEL
from escalator.models.rule import (
    DueDateApproachingTrigger,
    ItemCreatedTrigger,
    Rule,
    StatusChangedTrigger,
    TimeElapsedTrigger,
)

logger = get_logger(__name__)

_datetime_adapter = TypeAdapter(datetime)

_LEVEL_EVENT_KINDS = {
    ESCALATION_LEVEL: EventKind.ESCALATION_DUE,
    SLA_LEVEL: EventKind.SLA_BREACHED,
}


@dataclass
class MatchResult:
    """Result of matching one rule against one event."""

    matched: bool
    reason: str = ""


class RuleMatcher:
    """Pure trigger evaluation over an event, a rule set and the current time."""

    def match(
        self,
        event: CanonicalEvent,
        rules: list[Rule],
        now: datetime | None = None,
    ) -> list[Rule]:
        """Return the active rules whose trigger matches the event.

        Args:
            event: Canonical event
            rules: Candidate rules, expected to share the event's item type
            now: Evaluation time (defaults to the current time)

        Returns:
            Matching rules in input order
        """
        now = as_utc(now) if now else utcnow()
        matched = []
        for rule in rules:
            result = self.evaluate(event, rule, now)
            if result.matched:
                matched.append(rule)
            else:
                logger.debug(
                    "Rule not matched",
                    rule_id=rule.rule_id,
                    event_id=event.event_id,
                    reason=result.reason,
                )
        return matched

    def evaluate(self, event: CanonicalEvent, rule: Rule, now: datetime) -> MatchResult:
        """Evaluate a single rule against an event."""
        if not rule.is_active:
            return MatchResult(False, "Rule is inactive")

        if rule.item_type != event.item_type:
            logger.warning(
                "Rule item type does not match event",
                rule_id=rule.rule_id,
                rule_item_type=rule.item_type.value,
                event_item_type=event.item_type.value,
            )
            return MatchResult(False, "Item type mismatch")

        # Timer events are synthesized for exactly one rule
        if event.rule_id is not None and event.rule_id != rule.rule_id:
            return MatchResult(False, f"Timer event belongs to rule {event.rule_id}")

        trigger = rule.trigger
        if isinstance(trigger, StatusChangedTrigger):
            result = self._match_status_changed(event, trigger)
        elif isinstance(trigger, ItemCreatedTrigger):
            result = self._match_created(event)
        elif isinstance(trigger, DueDateApproachingTrigger):
            result = self._match_due_date(event, trigger, now)
        elif isinstance(trigger, TimeElapsedTrigger):
            result = self._match_time_elapsed(event, trigger)
        else:
            logger.warning(
                "Unknown trigger type",
                rule_id=rule.rule_id,
                trigger_type=getattr(trigger, "type", None),
            )
            return MatchResult(False, "Unknown trigger type")

        if not result.matched or trigger.condition is None:
            return result
        return self._match_condition(event, rule, trigger.condition)

    def _match_status_changed(self, event: CanonicalEvent, trigger: StatusChangedTrigger) -> MatchResult:
        if event.event_kind != EventKind.STATUS_CHANGED:
            return MatchResult(False, "Not a status change")
        if event.to_status != trigger.to_status:
            return MatchResult(False, f"Status moved to {event.to_status}, not {trigger.to_status}")
        if trigger.from_status is not None and event.from_status != trigger.from_status:
            return MatchResult(False, f"Status moved from {event.from_status}, not {trigger.from_status}")
        return MatchResult(True, f"Status changed to {trigger.to_status}")

    def _match_created(self, event: CanonicalEvent) -> MatchResult:
        if event.event_kind != EventKind.CREATED:
            return MatchResult(False, "Not a creation")
        return MatchResult(True, "Item created")

    def _match_due_date(
        self,
        event: CanonicalEvent,
        trigger: DueDateApproachingTrigger,
        now: datetime,
    ) -> MatchResult:
        # Only the scanner raises these; a status change never does
        if event.event_kind != EventKind.DUE_DATE_APPROACHING:
            return MatchResult(False, "Not a due date timer event")
        if event.rule_id is None:
            return MatchResult(False, "Timer event is not bound to a rule")

        raw_due = event.payload.get("due_date")
        if raw_due is None:
            return MatchResult(False, "Item has no due date")
        try:
            due_date = _datetime_adapter.validate_python(raw_due)
        except ValidationError:
            logger.warning("Unparseable due date", event_id=event.event_id, due_date=raw_due)
            return MatchResult(False, "Unparseable due date")

        hours_left = hours_between(now, due_date)
        if hours_left <= 0:
            return MatchResult(False, "Item is already past due")
        if hours_left > trigger.hours_before_due:
            return MatchResult(False, f"Due in {hours_left:.1f}h, outside {trigger.hours_before_due}h window")
        return MatchResult(True, f"Due in {hours_left:.1f}h")

    def _match_time_elapsed(self, event: CanonicalEvent, trigger: TimeElapsedTrigger) -> MatchResult:
        if event.event_kind != _LEVEL_EVENT_KINDS.get(trigger.level):
            return MatchResult(False, f"Not a level {trigger.level} timer event")
        if event.rule_id is None:
            return MatchResult(False, "Timer event is not bound to a rule")
        if event.level != trigger.level:
            return MatchResult(False, f"Event level {event.level} differs from {trigger.level}")
        return MatchResult(True, f"Open for more than {trigger.after_hours}h")

    def _match_condition(self, event: CanonicalEvent, rule: Rule, condition: str) -> MatchResult:
        context: dict[str, Any] = {
            **event.payload,
            "event_kind": event.event_kind.value,
            "from_status": event.from_status,
            "to_status": event.to_status,
        }
        try:
            if evaluate_expression(condition, context):
                return MatchResult(True, f"Condition '{condition}' holds")
            return MatchResult(False, f"Condition '{condition}' is false")
        except ValueError as e:
            logger.warning("Rule condition failed", rule_id=rule.rule_id, error=str(e))
            return MatchResult(False, f"Condition error: {e}")


_matcher: RuleMatcher | None = None


def get_rule_matcher() -> RuleMatcher:
    """Get rule matcher singleton."""
    global _matcher
    if _matcher is None:
        _matcher = RuleMatcher()
    return _matcher


def match(event: CanonicalEvent, rules: list[Rule], now: datetime | None = None) -> list[Rule]:
    """Select the active rules matching an event."""
    return get_rule_matcher().match(event, rules, now)
