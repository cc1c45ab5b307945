"""Action executor: applies a matched rule's action to its item."""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from redis.exceptions import RedisError

from escalator.core.config import Settings, get_settings
from escalator.core.errors import (
    ConfigurationError,
    NotificationDispatchError,
    TargetResolutionError,
    TransientStorageError,
)
from escalator.core.logging import get_logger
from escalator.items.base import ItemStore
from escalator.models.activity import ActivityLogEntry, Outcome
from escalator.models.event import CanonicalEvent
from escalator.models.item import EscalateTo, WorkItem, Workspace, WorkspaceType, is_valid_status
from escalator.models.rule import (
    AddTagAction,
    ChangeStatusAction,
    ReassignAction,
    Rule,
    SendNotificationAction,
    UpdatePriorityAction,
)
from escalator.notification.base import Notifier
from escalator.observability.metrics import ACTION_LATENCY, ACTIONS_EXECUTED
from escalator.storage.activity_log import ActivityLog
from escalator.storage.auxiliary import ItemLocks

logger = get_logger(__name__)

T = TypeVar("T")

# Upper bound on hierarchy walks, guards against parent cycles
_MAX_HIERARCHY_DEPTH = 16


@dataclass
class ActionResult:
    """Outcome of applying one action."""

    outcome: Outcome
    reason: str
    recipients: list[str] = field(default_factory=list)
    # Runs once the state change is committed, outside the retried unit
    follow_up: Callable[[], Awaitable[list[str]]] | None = None


class _TemplateFields(dict):
    """Leaves unknown placeholders in place instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class ActionExecutor:
    """Executes rule actions serialized per item.

    Every call to ``execute`` returns, and appends to the activity log,
    exactly one entry. Errors never propagate to the caller.
    """

    def __init__(
        self,
        items: ItemStore,
        notifier: Notifier,
        activity_log: ActivityLog | None = None,
        locks: ItemLocks | None = None,
        settings: Settings | None = None,
    ):
        self._items = items
        self._notifier = notifier
        self._activity_log = activity_log or ActivityLog()
        self._locks = locks or ItemLocks()
        self._settings = settings or get_settings()

    async def execute(self, rule: Rule, event: CanonicalEvent) -> ActivityLogEntry:
        """Apply the rule's action for the event's item.

        Args:
            rule: Matched rule
            event: Event that matched it

        Returns:
            The activity log entry describing the outcome
        """
        action_type = rule.action_type.value
        start = time.monotonic()
        retryable = False

        try:
            async with self._locks.hold(event.item_id):
                result = await self._with_retry(lambda: self._apply(rule, event))
                if result.follow_up is not None:
                    result.recipients = await result.follow_up()
        except ConfigurationError as e:
            result = ActionResult(Outcome.FAILED, f"invalid configuration: {e}")
        except TargetResolutionError as e:
            result = ActionResult(Outcome.FAILED, str(e))
        except NotificationDispatchError as e:
            result = ActionResult(Outcome.FAILED, f"notification failed: {e}")
        except TransientStorageError as e:
            result = ActionResult(Outcome.FAILED, f"storage unavailable: {e}")
            retryable = True
        except Exception as e:
            logger.error(
                "Unexpected error executing action",
                rule_id=rule.rule_id,
                item_id=event.item_id,
                action_type=action_type,
                error=str(e),
                exc_info=True,
            )
            result = ActionResult(Outcome.FAILED, f"unexpected error: {e}")

        elapsed = time.monotonic() - start
        ACTION_LATENCY.labels(action_type=action_type).observe(elapsed)
        return await self.record(rule, event, result, retryable=retryable, elapsed=elapsed)

    async def record(
        self,
        rule: Rule,
        event: CanonicalEvent,
        result: ActionResult,
        retryable: bool = False,
        elapsed: float = 0.0,
    ) -> ActivityLogEntry:
        """Append the activity log entry for a decided outcome.

        Also used by the engine for firings refused before execution.
        """
        action_type = rule.action_type.value
        entry = ActivityLogEntry(
            entry_id=f"act_{uuid.uuid4().hex[:12]}",
            rule_id=rule.rule_id,
            item_id=event.item_id,
            item_type=event.item_type,
            event_id=event.event_id,
            event_kind=event.event_kind.value,
            action_taken=action_type,
            outcome=result.outcome,
            reason=result.reason,
            retryable=retryable,
            recipients=result.recipients,
            latency_ms=int(elapsed * 1000),
        )

        ACTIONS_EXECUTED.labels(action_type=action_type, outcome=result.outcome.value).inc()

        log = logger.warning if result.outcome == Outcome.FAILED else logger.info
        log(
            "Action executed",
            rule_id=rule.rule_id,
            item_id=event.item_id,
            event_id=event.event_id,
            action_type=action_type,
            outcome=result.outcome.value,
            reason=result.reason,
        )

        await self._append(entry)
        return entry

    async def _apply(self, rule: Rule, event: CanonicalEvent) -> ActionResult:
        item = await self._items.get_item(event.item_type, event.item_id)
        if item is None:
            return ActionResult(Outcome.SKIPPED, f"item {event.item_id} not found")

        action = rule.action
        if isinstance(action, ChangeStatusAction):
            return await self._change_status(item, action)
        if isinstance(action, UpdatePriorityAction):
            return await self._update_priority(item, action)
        if isinstance(action, AddTagAction):
            return await self._add_tag(item, action)
        if isinstance(action, SendNotificationAction):
            return await self._send_notification(rule, event, item, action)
        if isinstance(action, ReassignAction):
            return await self._reassign(rule, event, item, action)
        raise ConfigurationError(f"unsupported action type {getattr(action, 'type', None)}")

    async def _change_status(self, item: WorkItem, action: ChangeStatusAction) -> ActionResult:
        if not is_valid_status(item.item_type, action.new_status):
            raise ConfigurationError(
                f"status {action.new_status} does not exist for {item.item_type.value}"
            )
        if item.status == action.new_status:
            return ActionResult(Outcome.SKIPPED, f"already {action.new_status}")
        await self._items.update_item(item.item_type, item.id, {"status": action.new_status})
        return ActionResult(Outcome.APPLIED, f"status {item.status} -> {action.new_status}")

    async def _update_priority(self, item: WorkItem, action: UpdatePriorityAction) -> ActionResult:
        new_priority = action.new_priority.value
        if item.priority == action.new_priority:
            return ActionResult(Outcome.SKIPPED, f"priority already {new_priority}")
        await self._items.update_item(item.item_type, item.id, {"priority": new_priority})
        return ActionResult(Outcome.APPLIED, f"priority set to {new_priority}")

    async def _add_tag(self, item: WorkItem, action: AddTagAction) -> ActionResult:
        if action.tag in item.tags:
            return ActionResult(Outcome.SKIPPED, f"tag '{action.tag}' already present")
        await self._items.update_item(item.item_type, item.id, {"tags": [*item.tags, action.tag]})
        return ActionResult(Outcome.APPLIED, f"tag '{action.tag}' added")

    async def _send_notification(
        self,
        rule: Rule,
        event: CanonicalEvent,
        item: WorkItem,
        action: SendNotificationAction,
    ) -> ActionResult:
        recipients: list[str] = []
        if action.notify_assignees:
            recipients.extend(item.assignee_ids)
        if action.notify_creator and item.creator_id:
            recipients.append(item.creator_id)

        role_workspace_id = item.workspace_id
        if action.escalate_to is not None:
            try:
                target = await self.resolve_target(item, action.escalate_to, action.escalation_path)
            except TargetResolutionError as e:
                logger.warning(
                    "No escalation target, notifying item workspace",
                    rule_id=rule.rule_id,
                    item_id=item.id,
                    reason=str(e),
                )
            else:
                role_workspace_id = target.id
                recipients.append(target.owner_id)

        if action.notify_roles:
            members = await self._items.list_members(role_workspace_id, action.notify_roles)
            recipients.extend(member.user_id for member in members)

        recipients = _unique(recipients)
        if not recipients:
            return ActionResult(Outcome.SKIPPED, "no recipients")

        await self._notifier.notify(
            recipients=recipients,
            title=_render(action.title, item),
            body=_render(action.message, item),
            priority=action.priority,
            channels=action.channels,
            metadata=_notification_metadata(rule, event),
        )
        return ActionResult(
            Outcome.APPLIED,
            f"notified {len(recipients)} recipient(s)",
            recipients=recipients,
        )

    async def _reassign(
        self,
        rule: Rule,
        event: CanonicalEvent,
        item: WorkItem,
        action: ReassignAction,
    ) -> ActionResult:
        target = await self.resolve_target(item, action.escalate_to, action.escalation_path)
        owner_id = target.owner_id

        if item.assignee_ids == [owner_id]:
            return ActionResult(Outcome.SKIPPED, f"already assigned to {owner_id}")

        await self._items.update_item(item.item_type, item.id, {"assignee_ids": [owner_id]})
        return ActionResult(
            Outcome.APPLIED,
            f"reassigned to {owner_id} of workspace {target.id}",
            follow_up=lambda: self._announce_reassignment(rule, event, item, action, target),
        )

    async def _announce_reassignment(
        self,
        rule: Rule,
        event: CanonicalEvent,
        item: WorkItem,
        action: ReassignAction,
        target: Workspace,
    ) -> list[str]:
        """Tell the new assignee and the target roles; failures never undo the reassignment.

        Returns:
            Recipients the notification was handed over for, empty if it was not
        """
        try:
            recipients = [target.owner_id]
            if action.notify_roles:
                members = await self._items.list_members(target.id, action.notify_roles)
                recipients.extend(member.user_id for member in members)
            recipients = _unique(recipients)
            await self._notifier.notify(
                recipients=recipients,
                title=_render("Escalated to you: {title}", item),
                body=_render("{title} ({item_type}) is still {status} and has been escalated.", item),
                priority=action.priority,
                channels=action.channels,
                metadata=_notification_metadata(rule, event),
            )
        except (TransientStorageError, NotificationDispatchError) as e:
            logger.warning(
                "Reassignment notification failed",
                rule_id=rule.rule_id,
                item_id=item.id,
                error=str(e),
            )
            return []
        return recipients

    async def resolve_target(
        self,
        item: WorkItem,
        escalate_to: EscalateTo,
        escalation_path: list[str] | None = None,
    ) -> Workspace:
        """Resolve the workspace an item escalates to.

        The escalation path is tried first, in order; the first workspace
        that exists and has an owner wins. Otherwise ``escalate_to`` is
        resolved relative to the item's workspace.

        Raises:
            TargetResolutionError: If no workspace with an owner resolves
        """
        for workspace_id in escalation_path or []:
            workspace = await self._items.get_workspace(workspace_id)
            if workspace is not None and workspace.owner_id:
                return workspace
            logger.debug("Skipping escalation path hop", item_id=item.id, workspace_id=workspace_id)

        home = await self._items.get_workspace(item.workspace_id)
        if home is None:
            raise TargetResolutionError(f"workspace {item.workspace_id} not found")

        if escalate_to == EscalateTo.PARENT:
            if not home.parent_workspace_id:
                raise TargetResolutionError("no parent workspace")
            target = await self._items.get_workspace(home.parent_workspace_id)
            if target is None:
                raise TargetResolutionError(f"parent workspace {home.parent_workspace_id} not found")
        elif escalate_to == EscalateTo.DEPARTMENT:
            target = await self._find_ancestor(home, lambda ws: ws.workspace_type == WorkspaceType.DEPARTMENT)
            if target is None:
                raise TargetResolutionError("no department workspace")
        else:
            if home.workspace_type == WorkspaceType.ROOT or not home.parent_workspace_id:
                raise TargetResolutionError("item workspace is already the root")
            target = await self._find_ancestor(
                home,
                lambda ws: ws.workspace_type == WorkspaceType.ROOT or not ws.parent_workspace_id,
            )
            if target is None:
                raise TargetResolutionError("no root workspace")

        if not target.owner_id:
            raise TargetResolutionError(f"workspace {target.id} has no owner")
        return target

    async def _find_ancestor(
        self,
        workspace: Workspace,
        predicate: Callable[[Workspace], bool],
    ) -> Workspace | None:
        """Walk up from the parent of ``workspace`` to the first match."""
        seen = {workspace.id}
        parent_id = workspace.parent_workspace_id
        while parent_id and parent_id not in seen and len(seen) <= _MAX_HIERARCHY_DEPTH:
            seen.add(parent_id)
            parent = await self._items.get_workspace(parent_id)
            if parent is None:
                return None
            if predicate(parent):
                return parent
            parent_id = parent.parent_workspace_id
        return None

    async def _with_retry(self, func: Callable[[], Awaitable[T]]) -> T:
        """Run ``func`` retrying transient storage errors with backoff."""
        attempts = self._settings.storage_max_retry
        for attempt in range(attempts):
            try:
                return await func()
            except TransientStorageError as e:
                if attempt == attempts - 1:
                    raise
                delay = self._settings.storage_retry_base_delay * (2 ** attempt)
                logger.warning(
                    "Transient storage error, retrying",
                    attempt=attempt + 1,
                    delay=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)
        raise TransientStorageError("no attempts configured")

    async def _append(self, entry: ActivityLogEntry) -> None:
        attempts = self._settings.storage_max_retry
        for attempt in range(attempts):
            try:
                await self._activity_log.append(entry)
                return
            except RedisError as e:
                if attempt == attempts - 1:
                    logger.error(
                        "Failed to write activity log entry",
                        entry=entry.model_dump(mode="json"),
                        error=str(e),
                    )
                    return
                await asyncio.sleep(self._settings.storage_retry_base_delay * (2 ** attempt))


def _render(template: str, item: WorkItem) -> str:
    """Fill ``{placeholder}`` fields of a template from an item."""
    try:
        return template.format_map(_TemplateFields(item.template_fields()))
    except (ValueError, IndexError, AttributeError) as e:
        raise ConfigurationError(f"malformed template '{template}': {e}") from e


def _notification_metadata(rule: Rule, event: CanonicalEvent) -> dict[str, Any]:
    return {
        "rule_id": rule.rule_id,
        "item_id": event.item_id,
        "item_type": event.item_type.value,
        "event_id": event.event_id,
        "level": event.level,
    }


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))
