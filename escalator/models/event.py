"""Canonical event domain model."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from escalator.core.clock import as_utc, utcnow
from escalator.models.item import ItemType, WorkItem


class EventKind(str, Enum):
    """Kinds of canonical events."""

    CREATED = "CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    UPDATED = "UPDATED"
    DUE_DATE_CHANGED = "DUE_DATE_CHANGED"
    DELETED = "DELETED"
    # Synthesized by the scanner
    DUE_DATE_APPROACHING = "DUE_DATE_APPROACHING"
    ESCALATION_DUE = "ESCALATION_DUE"
    SLA_BREACHED = "SLA_BREACHED"


# Raised only by the scanner, never accepted from ingest
TIMER_EVENT_KINDS = frozenset({
    EventKind.DUE_DATE_APPROACHING,
    EventKind.ESCALATION_DUE,
    EventKind.SLA_BREACHED,
})


class CanonicalEvent(BaseModel):
    """Normalized domain occurrence fed into rule matching."""

    event_id: str = Field(
        default_factory=lambda: f"evt_{uuid4().hex}",
        description="Event unique identifier for idempotency",
    )
    item_id: str = Field(..., description="Affected item")
    item_type: ItemType = Field(..., description="Affected item type")
    workspace_id: str = Field(..., description="Workspace owning the item")
    event_kind: EventKind = Field(..., description="What happened")
    from_status: str | None = Field(default=None, description="Status before a change")
    to_status: str | None = Field(default=None, description="Status after a change")
    occurred_at: datetime = Field(default_factory=utcnow)
    rule_id: str | None = Field(
        default=None,
        description="Rule a timer event was synthesized for",
    )
    level: int | None = Field(default=None, description="Escalation level of a timer event")
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Item snapshot at the time of the event",
    )

    @field_validator("from_status", "to_status", mode="before")
    @classmethod
    def upper(cls, value: str | None) -> str | None:
        return value.upper() if isinstance(value, str) else value

    @field_validator("occurred_at")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @classmethod
    def for_timer(
        cls,
        item: WorkItem,
        kind: EventKind,
        rule_id: str,
        level: int,
        occurred_at: datetime,
    ) -> "CanonicalEvent":
        """Synthesize a timer event for one (item, rule, level)."""
        return cls(
            event_id=f"timer_{rule_id}_{item.id}_{level}_{int(occurred_at.timestamp())}",
            item_id=item.id,
            item_type=item.item_type,
            workspace_id=item.workspace_id,
            event_kind=kind,
            to_status=item.status,
            occurred_at=occurred_at,
            rule_id=rule_id,
            level=level,
            payload=item.model_dump(mode="json"),
        )
