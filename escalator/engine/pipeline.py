"""Event processing pipeline."""

import time
from datetime import datetime

from redis.asyncio import Redis

from escalator.core.clock import utcnow
from escalator.core.logging import get_logger
from escalator.engine.executor import ActionExecutor, ActionResult
from escalator.engine.matcher import RuleMatcher, get_rule_matcher
from escalator.items.base import ItemStore
from escalator.models.activity import ActivityLogEntry, Outcome
from escalator.models.escalation import StateSource
from escalator.models.event import CanonicalEvent, EventKind
from escalator.models.item import is_closed_status
from escalator.models.rule import Rule, RuleSource
from escalator.notification.base import Notifier
from escalator.observability.metrics import EVENTS_PROCESSED, EVENTS_RECEIVED, RULES_MATCHED
from escalator.observability.tracing import event_trace
from escalator.storage.activity_log import ActivityLog
from escalator.storage.auxiliary import IdempotencyStore, ItemLocks
from escalator.storage.escalation_store import EscalationRuleStore
from escalator.storage.rule_store import RuleStore
from escalator.storage.state_store import EscalationStateStore

logger = get_logger(__name__)


class EscalationEngine:
    """Routes canonical events through matching and execution."""

    def __init__(
        self,
        executor: ActionExecutor,
        rule_store: RuleStore | None = None,
        escalation_store: EscalationRuleStore | None = None,
        state_store: EscalationStateStore | None = None,
        idempotency: IdempotencyStore | None = None,
        matcher: RuleMatcher | None = None,
    ):
        self._executor = executor
        self._rule_store = rule_store or RuleStore()
        self._escalation_store = escalation_store or EscalationRuleStore()
        self._state_store = state_store or EscalationStateStore()
        self._idempotency = idempotency or IdempotencyStore()
        self._matcher = matcher or get_rule_matcher()

    async def on_event(self, event: CanonicalEvent) -> list[ActivityLogEntry]:
        """Process an incoming domain event through the full pipeline.

        Pipeline steps:
        1. Idempotency check
        2. Escalation state bookkeeping
        3. Load the workspace's active rules for the item type
        4. Match and execute

        Args:
            event: Event to process

        Returns:
            One activity log entry per executed rule
        """
        EVENTS_RECEIVED.labels(event_kind=event.event_kind.value).inc()

        with event_trace(event):
            start_time = time.time()
            logger.info(
                "Processing event",
                event_id=event.event_id,
                event_kind=event.event_kind.value,
                item_id=event.item_id,
            )

            if not await self._idempotency.mark_processed(event.event_id):
                logger.debug("Event already processed", event_id=event.event_id)
                EVENTS_PROCESSED.labels(event_kind=event.event_kind.value, status="duplicate").inc()
                return []

            try:
                await self._track_state(event)
                rules = await self._rule_store.list_active(event.workspace_id, event.item_type)
                matched = self.match(event, rules)
                entries = await self.dispatch(event, matched)
            except Exception:
                # Let a redelivery run the event again
                await self._idempotency.unmark(event.event_id)
                EVENTS_PROCESSED.labels(event_kind=event.event_kind.value, status="error").inc()
                raise

            EVENTS_PROCESSED.labels(event_kind=event.event_kind.value, status="success").inc()
            logger.info(
                "Event processing complete",
                event_id=event.event_id,
                rules_matched=len(matched),
                elapsed_ms=int((time.time() - start_time) * 1000),
            )
            return entries

    async def on_timer_event(
        self,
        event: CanonicalEvent,
        rule: Rule,
        now: datetime | None = None,
    ) -> ActivityLogEntry | None:
        """Run a scanner-synthesized event against the rule it was raised for.

        Returns:
            The activity log entry, or None if the rule no longer matches
        """
        EVENTS_RECEIVED.labels(event_kind=event.event_kind.value).inc()
        with event_trace(event):
            matched = self.match(event, [rule], now)
            entries = await self.dispatch(event, matched)
        EVENTS_PROCESSED.labels(event_kind=event.event_kind.value, status="success").inc()
        return entries[0] if entries else None

    def match(self, event: CanonicalEvent, rules: list[Rule], now: datetime | None = None) -> list[Rule]:
        """Match rules and count the matches."""
        matched = self._matcher.match(event, rules, now)
        for rule in matched:
            RULES_MATCHED.labels(trigger_type=rule.trigger_type.value).inc()
        return matched

    async def dispatch(self, event: CanonicalEvent, rules: list[Rule]) -> list[ActivityLogEntry]:
        """Execute matched rules one after another.

        A rule deactivated or deleted since matching is recorded as skipped.
        A failure in one rule never stops the others.
        """
        entries = []
        for rule in rules:
            try:
                if await self._is_still_active(rule):
                    entry = await self._executor.execute(rule, event)
                else:
                    entry = await self._executor.record(
                        rule,
                        event,
                        ActionResult(Outcome.SKIPPED, "rule deactivated before execution"),
                    )
            except Exception as e:
                logger.error(
                    "Error executing rule",
                    rule_id=rule.rule_id,
                    event_id=event.event_id,
                    error=str(e),
                    exc_info=True,
                )
                continue
            entries.append(entry)
        return entries

    async def _is_still_active(self, rule: Rule) -> bool:
        if rule.source == RuleSource.ESCALATION:
            current = await self._escalation_store.get(rule.rule_id)
        else:
            current = await self._rule_store.get(rule.rule_id)
        return current is not None and current.is_active

    async def _track_state(self, event: CanonicalEvent) -> None:
        """Keep escalation states in step with the item's lifecycle."""
        if event.event_kind == EventKind.STATUS_CHANGED:
            if is_closed_status(event.item_type, event.to_status):
                count = await self._state_store.resolve_item(event.item_id, utcnow())
                logger.debug("Escalations resolved", item_id=event.item_id, count=count)
            else:
                # A status change restarts the escalation clock
                await self._state_store.reset_item(event.item_id, StateSource.ESCALATION)
        elif event.event_kind == EventKind.DUE_DATE_CHANGED:
            await self._state_store.reset_item(event.item_id, StateSource.DUE_DATE)
        elif event.event_kind == EventKind.DELETED:
            await self._state_store.purge_item(event.item_id)


def create_engine(items: ItemStore, notifier: Notifier, redis: Redis | None = None) -> EscalationEngine:
    """Wire an engine and its Redis-backed stores around the collaborators."""
    executor = ActionExecutor(
        items=items,
        notifier=notifier,
        activity_log=ActivityLog(redis),
        locks=ItemLocks(redis),
    )
    return EscalationEngine(
        executor=executor,
        rule_store=RuleStore(redis),
        escalation_store=EscalationRuleStore(redis),
        state_store=EscalationStateStore(redis),
        idempotency=IdempotencyStore(redis),
    )
