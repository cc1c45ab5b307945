"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis

from escalator.core.config import Settings
from escalator.core.errors import NotificationDispatchError, TransientStorageError
from escalator.engine.executor import ActionExecutor
from escalator.engine.pipeline import EscalationEngine
from escalator.engine.scanner import TimerScanner
from escalator.items.base import ItemStore
from escalator.models.item import (
    ItemType,
    Priority,
    WorkItem,
    Workspace,
    WorkspaceMember,
    WorkspaceType,
)
from escalator.models.notification import NotificationPriority
from escalator.notification.base import Notifier
from escalator.storage.activity_log import ActivityLog
from escalator.storage.auxiliary import IdempotencyStore, ItemLocks
from escalator.storage.escalation_store import EscalationRuleStore
from escalator.storage.rule_store import RuleStore
from escalator.storage.state_store import EscalationStateStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeItemStore(ItemStore):
    """In-memory workspace item API."""

    def __init__(self):
        self.items: dict[str, WorkItem] = {}
        self.workspaces: dict[str, Workspace] = {}
        self.members: dict[str, list[WorkspaceMember]] = {}
        self.updates: list[tuple[str, dict[str, Any]]] = []
        self.transient_failures = 0
        self.member_lookup_failures = 0

    def add_item(self, item: WorkItem) -> WorkItem:
        self.items[item.id] = item
        return item

    def add_workspace(self, workspace: Workspace, members: list[WorkspaceMember] | None = None) -> Workspace:
        self.workspaces[workspace.id] = workspace
        self.members[workspace.id] = members or []
        return workspace

    async def get_item(self, item_type: ItemType, item_id: str) -> WorkItem | None:
        item = self.items.get(item_id)
        return item if item is not None and item.item_type == item_type else None

    async def list_open_items(self, workspace_id: str, item_type: ItemType) -> list[WorkItem]:
        return [
            item for item in self.items.values()
            if item.workspace_id == workspace_id and item.item_type == item_type and not item.is_closed
        ]

    async def update_item(self, item_type: ItemType, item_id: str, changes: dict[str, Any]) -> WorkItem:
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise TransientStorageError("item API returned 503")
        updated = WorkItem.model_validate({**self.items[item_id].model_dump(), **changes})
        self.items[item_id] = updated
        self.updates.append((item_id, changes))
        return updated

    async def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self.workspaces.get(workspace_id)

    async def list_members(self, workspace_id: str, roles: list[str]) -> list[WorkspaceMember]:
        if self.member_lookup_failures > 0:
            self.member_lookup_failures -= 1
            raise TransientStorageError("members API unavailable")
        return [m for m in self.members.get(workspace_id, []) if m.role in roles]


class FakeNotifier(Notifier):
    """Records notifications instead of queueing them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    async def notify(
        self,
        recipients: list[str],
        title: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        channels: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        if self.fail:
            raise NotificationDispatchError("dispatch queue unavailable")
        self.sent.append({
            "recipients": recipients,
            "title": title,
            "body": body,
            "priority": priority,
            "channels": channels or [],
            "metadata": metadata or {},
        })
        return f"notify_{len(self.sent)}"


def make_task(
    item_id: str = "task_1",
    workspace_id: str = "ws_team",
    status: str = "IN_PROGRESS",
    age_hours: float = 1,
    **fields: Any,
) -> WorkItem:
    """Build a task created ``age_hours`` before NOW."""
    data: dict[str, Any] = {
        "id": item_id,
        "item_type": ItemType.TASK,
        "workspace_id": workspace_id,
        "title": "Book the venue",
        "status": status,
        "priority": Priority.MEDIUM,
        "assignee_ids": ["user_alice"],
        "creator_id": "user_carol",
        "created_at": NOW - timedelta(hours=age_hours),
    }
    data.update(fields)
    return WorkItem.model_validate(data)


@pytest.fixture
def settings() -> Settings:
    """Settings without backoff delays."""
    return Settings(
        storage_retry_base_delay=0.0,
        escalation_cooldown_seconds=300,
        item_lock_wait_seconds=1.0,
    )


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[FakeAsyncRedis]:
    """In-memory Redis."""
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def items() -> FakeItemStore:
    """Item store with a ROOT > DEPARTMENT > TEAM hierarchy."""
    store = FakeItemStore()
    store.add_workspace(
        Workspace(id="ws_root", name="Event", workspace_type=WorkspaceType.ROOT, owner_id="user_root")
    )
    store.add_workspace(
        Workspace(
            id="ws_dept",
            name="Operations",
            workspace_type=WorkspaceType.DEPARTMENT,
            parent_workspace_id="ws_root",
            owner_id="user_dept",
        ),
        members=[WorkspaceMember(user_id="user_lead", role="LEAD")],
    )
    store.add_workspace(
        Workspace(
            id="ws_team",
            name="Venue team",
            workspace_type=WorkspaceType.TEAM,
            parent_workspace_id="ws_dept",
            owner_id="user_team",
        ),
        members=[
            WorkspaceMember(user_id="user_manager", role="MANAGER"),
            WorkspaceMember(user_id="user_alice", role="MEMBER"),
        ],
    )
    return store


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def rule_store(redis: FakeAsyncRedis) -> RuleStore:
    return RuleStore(redis)


@pytest.fixture
def escalation_store(redis: FakeAsyncRedis) -> EscalationRuleStore:
    return EscalationRuleStore(redis)


@pytest.fixture
def state_store(redis: FakeAsyncRedis) -> EscalationStateStore:
    return EscalationStateStore(redis)


@pytest.fixture
def activity_log(redis: FakeAsyncRedis) -> ActivityLog:
    return ActivityLog(redis, max_entries=100)


@pytest.fixture
def executor(
    redis: FakeAsyncRedis,
    items: FakeItemStore,
    notifier: FakeNotifier,
    activity_log: ActivityLog,
    settings: Settings,
) -> ActionExecutor:
    return ActionExecutor(
        items=items,
        notifier=notifier,
        activity_log=activity_log,
        locks=ItemLocks(redis, timeout=5, wait=1.0),
        settings=settings,
    )


@pytest.fixture
def engine(
    redis: FakeAsyncRedis,
    executor: ActionExecutor,
    rule_store: RuleStore,
    escalation_store: EscalationRuleStore,
    state_store: EscalationStateStore,
) -> EscalationEngine:
    return EscalationEngine(
        executor=executor,
        rule_store=rule_store,
        escalation_store=escalation_store,
        state_store=state_store,
        idempotency=IdempotencyStore(redis, ttl_seconds=3600),
    )


@pytest.fixture
def scanner(
    engine: EscalationEngine,
    items: FakeItemStore,
    escalation_store: EscalationRuleStore,
    rule_store: RuleStore,
    state_store: EscalationStateStore,
    settings: Settings,
) -> TimerScanner:
    return TimerScanner(
        engine=engine,
        items=items,
        escalation_store=escalation_store,
        rule_store=rule_store,
        state_store=state_store,
        settings=settings,
    )
