"""Activity log domain models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from escalator.core.clock import utcnow
from escalator.models.item import ItemType


class Outcome(str, Enum):
    """Outcome of a rule firing."""

    APPLIED = "APPLIED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class ActivityLogEntry(BaseModel):
    """Immutable record of one rule firing."""

    model_config = {"frozen": True}

    entry_id: str = Field(..., description="Entry unique identifier")
    rule_id: str = Field(..., description="Rule that fired")
    item_id: str = Field(..., description="Item the action targeted")
    item_type: ItemType = Field(..., description="Item type")
    event_id: str = Field(..., description="Event that caused the firing")
    event_kind: str = Field(..., description="Kind of that event")
    fired_at: datetime = Field(default_factory=utcnow)
    action_taken: str = Field(..., description="Action type")
    outcome: Outcome = Field(..., description="Applied, skipped or failed")
    reason: str = Field(default="", description="Human readable outcome reason")
    retryable: bool = Field(
        default=False,
        description="Failure came from a transient error and may succeed later",
    )
    recipients: list[str] = Field(default_factory=list, description="Notified users")
    latency_ms: int = Field(default=0, ge=0, description="Execution latency in milliseconds")
