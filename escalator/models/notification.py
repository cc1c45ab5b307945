"""Notification request domain models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from escalator.core.clock import utcnow


class NotificationPriority(str, Enum):
    """Delivery priority hint for the notification service."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationRequest(BaseModel):
    """Payload handed to the notification dispatch service."""

    request_id: str = Field(..., description="Request unique identifier")
    recipients: list[str] = Field(..., min_length=1, description="Recipient user IDs")
    title: str = Field(..., description="Notification title")
    body: str = Field(default="", description="Notification body")
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
    channels: list[str] = Field(
        default_factory=list,
        description="Preferred delivery channels; empty lets the service choose",
    )
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Rule, item and event identifiers for traceability",
    )
