"""Workspace item and workspace models as seen through the item API."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from escalator.core.clock import as_utc


class ItemType(str, Enum):
    """Workspace item types that rules can target."""

    TASK = "TASK"
    BUDGET_REQUEST = "BUDGET_REQUEST"
    RESOURCE_REQUEST = "RESOURCE_REQUEST"


class TaskStatus(str, Enum):
    """Task board statuses."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    BLOCKED = "BLOCKED"
    COMPLETED = "COMPLETED"


class RequestStatus(str, Enum):
    """Approval statuses shared by budget and resource requests."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Priority(str, Enum):
    """Item priority."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class WorkspaceType(str, Enum):
    """Position of a workspace in the event hierarchy."""

    ROOT = "ROOT"
    DEPARTMENT = "DEPARTMENT"
    COMMITTEE = "COMMITTEE"
    TEAM = "TEAM"


class EscalateTo(str, Enum):
    """Relative escalation target in the workspace hierarchy."""

    PARENT = "PARENT"
    DEPARTMENT = "DEPARTMENT"
    ROOT = "ROOT"


ITEM_STATUSES: dict[ItemType, frozenset[str]] = {
    ItemType.TASK: frozenset(s.value for s in TaskStatus),
    ItemType.BUDGET_REQUEST: frozenset(s.value for s in RequestStatus),
    ItemType.RESOURCE_REQUEST: frozenset(s.value for s in RequestStatus),
}

CLOSED_STATUSES: dict[ItemType, frozenset[str]] = {
    ItemType.TASK: frozenset({TaskStatus.COMPLETED.value}),
    ItemType.BUDGET_REQUEST: frozenset({RequestStatus.APPROVED.value, RequestStatus.REJECTED.value}),
    ItemType.RESOURCE_REQUEST: frozenset({RequestStatus.APPROVED.value, RequestStatus.REJECTED.value}),
}


def is_valid_status(item_type: ItemType, status: str) -> bool:
    """Check that a status exists for the given item type."""
    return status in ITEM_STATUSES[item_type]


def is_closed_status(item_type: ItemType, status: str | None) -> bool:
    """Check whether a status means the item no longer needs attention."""
    return status is not None and status in CLOSED_STATUSES[item_type]


class WorkItem(BaseModel):
    """Snapshot of a task, budget request or resource request."""

    id: str = Field(..., description="Item identifier")
    item_type: ItemType = Field(..., description="Item type")
    workspace_id: str = Field(..., description="Owning workspace")
    title: str = Field(default="", description="Item title")
    status: str = Field(..., description="Current status")
    priority: Priority | None = Field(default=None, description="Current priority")
    assignee_ids: list[str] = Field(default_factory=list, description="Assigned user IDs")
    creator_id: str | None = Field(default=None, description="User who created the item")
    tags: list[str] = Field(default_factory=list, description="Item tags")
    due_date: datetime | None = Field(default=None, description="Due date")
    created_at: datetime = Field(..., description="Creation time")
    status_changed_at: datetime | None = Field(
        default=None,
        description="Time of the last status change",
    )

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return str(value).upper()

    @field_validator("due_date", "created_at", "status_changed_at")
    @classmethod
    def ensure_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_closed(self) -> bool:
        return is_closed_status(self.item_type, self.status)

    @property
    def clock_started_at(self) -> datetime:
        """Start of the escalation clock: last status change, else creation."""
        return self.status_changed_at or self.created_at

    def template_fields(self) -> dict[str, str]:
        """Fields available to notification templates."""
        return {
            "item_id": self.id,
            "item_type": self.item_type.value,
            "title": self.title,
            "status": self.status,
            "priority": self.priority.value if self.priority else "",
            "workspace_id": self.workspace_id,
        }


class Workspace(BaseModel):
    """Workspace node in the event hierarchy."""

    id: str
    name: str = ""
    workspace_type: WorkspaceType = WorkspaceType.TEAM
    parent_workspace_id: str | None = None
    owner_id: str | None = None


class WorkspaceMember(BaseModel):
    """Team member of a workspace."""

    user_id: str
    role: str
