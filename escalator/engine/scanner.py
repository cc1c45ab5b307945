"""Timer/SLA scanner synthesizing time-based events."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime

from escalator.core.clock import as_utc, hours_between, utcnow
from escalator.core.config import Settings, get_settings
from escalator.core.errors import TransientStorageError
from escalator.core.logging import get_logger
from escalator.engine.pipeline import EscalationEngine
from escalator.items.base import ItemStore
from escalator.models.activity import ActivityLogEntry, Outcome
from escalator.models.escalation import ESCALATION_LEVEL, SLA_LEVEL, EscalationRule, StateSource
from escalator.models.event import CanonicalEvent, EventKind
from escalator.models.item import ItemType, WorkItem
from escalator.models.rule import DueDateApproachingTrigger, Rule, TriggerType
from escalator.observability.metrics import ESCALATIONS_FIRED, ITEMS_SCANNED, SCAN_DURATION
from escalator.storage.escalation_store import EscalationRuleStore
from escalator.storage.rule_store import RuleStore
from escalator.storage.state_store import EscalationClaim, EscalationStateStore

logger = get_logger(__name__)

_LEVEL_EVENT_KINDS = {
    ESCALATION_LEVEL: EventKind.ESCALATION_DUE,
    SLA_LEVEL: EventKind.SLA_BREACHED,
}

# Due date rules fire once per item until the due date changes
_DUE_DATE_LEVEL = 1


@dataclass
class ScanReport:
    """Summary of one sweep."""

    items_scanned: int = 0
    fired: int = 0
    failed: int = 0


class TimerScanner:
    """Periodically raises escalation, SLA and due date events.

    Several scanners may run at once: each firing is reserved through the
    escalation state store before it is executed, so a level fires once.
    """

    def __init__(
        self,
        engine: EscalationEngine,
        items: ItemStore,
        escalation_store: EscalationRuleStore | None = None,
        rule_store: RuleStore | None = None,
        state_store: EscalationStateStore | None = None,
        settings: Settings | None = None,
    ):
        self._engine = engine
        self._items = items
        self._escalation_store = escalation_store or EscalationRuleStore()
        self._rule_store = rule_store or RuleStore()
        self._state_store = state_store or EscalationStateStore()
        self._settings = settings or get_settings()
        self._should_stop = False

    async def start(self) -> None:
        """Run sweeps every ``scan_interval_seconds`` until stopped."""
        logger.info("Scanner started", interval=self._settings.scan_interval_seconds)

        while not self._should_stop:
            try:
                await self.scan_once()
            except Exception as e:
                logger.error("Scan error", error=str(e), exc_info=True)
            await self._sleep(self._settings.scan_interval_seconds)

        logger.info("Scanner stopped")

    def stop(self) -> None:
        """Signal scanner to stop."""
        self._should_stop = True

    async def _sleep(self, seconds: float) -> None:
        # Wake up early on stop
        deadline = time.monotonic() + seconds
        while not self._should_stop and time.monotonic() < deadline:
            await asyncio.sleep(min(1.0, deadline - time.monotonic()))

    async def scan_once(self, now: datetime | None = None) -> ScanReport:
        """Run one sweep over every active escalation and due date rule.

        Args:
            now: Sweep time (defaults to the current time)

        Returns:
            Counts of scanned items and fired rules
        """
        now = as_utc(now) if now else utcnow()
        start = time.monotonic()
        report = ScanReport()
        open_items: dict[tuple[str, ItemType], list[WorkItem]] = {}
        seen: set[str] = set()

        escalation_rules = await self._escalation_store.list_active()
        due_date_rules = await self._rule_store.list_by_trigger(TriggerType.DUE_DATE_APPROACHING)

        for escalation_rule in escalation_rules:
            items = await self._open_items(
                open_items, escalation_rule.workspace_id, escalation_rule.item_type
            )
            for item in items:
                seen.add(item.id)
                entry = await self._guarded(
                    self._scan_escalation(escalation_rule, item, now),
                    item,
                    escalation_rule.rule_id,
                )
                self._count(report, entry)

        for rule in due_date_rules:
            items = await self._open_items(open_items, rule.workspace_id, rule.item_type)
            for item in items:
                seen.add(item.id)
                entry = await self._guarded(self._scan_due_date(rule, item, now), item, rule.rule_id)
                self._count(report, entry)

        report.items_scanned = len(seen)
        ITEMS_SCANNED.set(report.items_scanned)
        SCAN_DURATION.observe(time.monotonic() - start)
        logger.info(
            "Scan complete",
            escalation_rules=len(escalation_rules),
            due_date_rules=len(due_date_rules),
            items_scanned=report.items_scanned,
            fired=report.fired,
            failed=report.failed,
        )
        return report

    async def _scan_escalation(
        self,
        escalation_rule: EscalationRule,
        item: WorkItem,
        now: datetime,
    ) -> ActivityLogEntry | None:
        level = escalation_rule.due_level(hours_between(item.clock_started_at, now))
        if level == 0:
            return None

        claim = await self._state_store.claim(
            item.id,
            escalation_rule.rule_id,
            level,
            now,
            self._settings.escalation_cooldown_seconds,
            source=StateSource.ESCALATION,
        )
        if claim is None:
            return None

        ESCALATIONS_FIRED.labels(level=str(level)).inc()
        logger.info(
            "Escalation due",
            item_id=item.id,
            rule_id=escalation_rule.rule_id,
            level=level,
        )
        event = CanonicalEvent.for_timer(item, _LEVEL_EVENT_KINDS[level], escalation_rule.rule_id, level, now)
        return await self._fire(claim, event, escalation_rule.to_rule(level), now)

    async def _scan_due_date(self, rule: Rule, item: WorkItem, now: datetime) -> ActivityLogEntry | None:
        trigger = rule.trigger
        if not isinstance(trigger, DueDateApproachingTrigger) or item.due_date is None or item.is_closed:
            return None

        hours_left = hours_between(now, item.due_date)
        if hours_left <= 0 or hours_left > trigger.hours_before_due:
            return None

        claim = await self._state_store.claim(
            item.id,
            rule.rule_id,
            _DUE_DATE_LEVEL,
            now,
            self._settings.escalation_cooldown_seconds,
            source=StateSource.DUE_DATE,
        )
        if claim is None:
            return None

        event = CanonicalEvent.for_timer(
            item, EventKind.DUE_DATE_APPROACHING, rule.rule_id, _DUE_DATE_LEVEL, now
        )
        return await self._fire(claim, event, rule, now)

    async def _fire(
        self,
        claim: EscalationClaim,
        event: CanonicalEvent,
        rule: Rule,
        now: datetime,
    ) -> ActivityLogEntry | None:
        """Execute a claimed firing, giving the claim back if it did not happen."""
        entry = await self._engine.on_timer_event(event, rule, now)
        if entry is None or (entry.outcome == Outcome.FAILED and entry.retryable):
            released = await self._state_store.release(claim)
            logger.info(
                "Claim released",
                item_id=event.item_id,
                rule_id=rule.rule_id,
                level=event.level,
                released=released,
            )
        return entry

    async def _open_items(
        self,
        cache: dict[tuple[str, ItemType], list[WorkItem]],
        workspace_id: str,
        item_type: ItemType,
    ) -> list[WorkItem]:
        key = (workspace_id, item_type)
        if key not in cache:
            try:
                cache[key] = await self._items.list_open_items(workspace_id, item_type)
            except TransientStorageError as e:
                logger.warning(
                    "Skipping workspace in this scan",
                    workspace_id=workspace_id,
                    item_type=item_type.value,
                    error=str(e),
                )
                cache[key] = []
        return cache[key]

    async def _guarded(self, scan, item: WorkItem, rule_id: str) -> ActivityLogEntry | None:
        """Await one (item, rule) scan, isolating its failure from the sweep."""
        try:
            return await scan
        except Exception as e:
            logger.error(
                "Error scanning item",
                item_id=item.id,
                rule_id=rule_id,
                error=str(e),
                exc_info=True,
            )
            return None

    @staticmethod
    def _count(report: ScanReport, entry: ActivityLogEntry | None) -> None:
        if entry is None:
            return
        if entry.outcome == Outcome.FAILED:
            report.failed += 1
        else:
            report.fired += 1
