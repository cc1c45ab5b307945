"""Escalation rule and escalation state models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from escalator.core.clock import as_utc, utcnow
from escalator.models.item import EscalateTo, ItemType
from escalator.models.notification import NotificationPriority
from escalator.models.rule import (
    ReassignAction,
    Rule,
    RuleMetadata,
    RuleSource,
    SendNotificationAction,
    TimeElapsedTrigger,
)

ESCALATION_LEVEL = 1
SLA_LEVEL = 2


class EscalationRule(BaseModel):
    """Timer-driven escalation rule for one workspace and item type."""

    rule_id: str = Field(..., description="Escalation rule identifier")
    workspace_id: str = Field(..., description="Owning workspace")
    item_type: ItemType = Field(..., description="Item type the rule watches")
    trigger_after_hours: int = Field(..., ge=1, description="Hours until first escalation")
    sla_hours: int | None = Field(default=None, ge=1, description="Hours until SLA breach")
    escalate_to: EscalateTo = Field(default=EscalateTo.PARENT)
    escalation_path: list[str] = Field(
        default_factory=list,
        description="Ordered workspace ids tried before escalate_to",
    )
    notify_roles: list[str] = Field(default_factory=list)
    notification_channels: list[str] = Field(default_factory=list)
    auto_reassign: bool = Field(default=False)
    is_active: bool = Field(default=True)
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)

    @field_validator("escalation_path")
    @classmethod
    def validate_path(cls, value: list[str]) -> list[str]:
        if any(not hop.strip() for hop in value):
            raise ValueError("escalation_path entries must not be blank")
        if len(set(value)) != len(value):
            raise ValueError("escalation_path must not repeat a workspace")
        return value

    @model_validator(mode="after")
    def validate_sla(self) -> "EscalationRule":
        """An SLA cannot be breached before the rule has triggered."""
        if self.sla_hours is not None and self.sla_hours < self.trigger_after_hours:
            raise ValueError("sla_hours must be greater than or equal to trigger_after_hours")
        return self

    def due_level(self, age_hours: float) -> int:
        """Escalation level an item of the given age has reached (0 if none)."""
        if self.sla_hours is not None and age_hours >= self.sla_hours:
            return SLA_LEVEL
        if age_hours >= self.trigger_after_hours:
            return ESCALATION_LEVEL
        return 0

    def to_rule(self, level: int) -> Rule:
        """Build the automation rule that performs this escalation level."""
        if level == SLA_LEVEL:
            if self.sla_hours is None:
                raise ValueError(f"Escalation rule {self.rule_id} has no SLA level")
            after_hours = self.sla_hours
            priority = NotificationPriority.URGENT
            title = "SLA breached: {title}"
            message = (
                f"{{title}} has exceeded its {self.sla_hours}h SLA "
                "and is still {status}."
            )
        else:
            after_hours = self.trigger_after_hours
            priority = NotificationPriority.HIGH
            title = "Escalation: {title}"
            message = (
                f"{{title}} has been open for more than {self.trigger_after_hours}h "
                "and is still {status}."
            )

        if self.auto_reassign:
            action = ReassignAction(
                escalate_to=self.escalate_to,
                escalation_path=self.escalation_path,
                notify_roles=self.notify_roles,
                channels=self.notification_channels,
                priority=priority,
            )
        else:
            action = SendNotificationAction(
                title=title,
                message=message,
                notify_assignees=True,
                notify_roles=self.notify_roles,
                channels=self.notification_channels,
                priority=priority,
                escalate_to=self.escalate_to,
                escalation_path=self.escalation_path,
            )

        return Rule(
            rule_id=self.rule_id,
            workspace_id=self.workspace_id,
            item_type=self.item_type,
            name=f"{self.item_type.value} escalation level {level}",
            is_active=self.is_active,
            source=RuleSource.ESCALATION,
            trigger=TimeElapsedTrigger(after_hours=after_hours, level=level),
            action=action,
            metadata=self.metadata,
        )


class EscalationStatus(str, Enum):
    """Lifecycle of an (item, rule) escalation."""

    IDLE = "IDLE"
    TRIGGERED = "TRIGGERED"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class StateSource(str, Enum):
    """Which timer family owns a state record."""

    ESCALATION = "escalation"
    DUE_DATE = "due_date"


_LEVEL_STATUS = {
    ESCALATION_LEVEL: EscalationStatus.TRIGGERED,
    SLA_LEVEL: EscalationStatus.ESCALATED,
}


class EscalationState(BaseModel):
    """Firing state for one (item, rule) pair."""

    item_id: str
    rule_id: str
    source: StateSource = StateSource.ESCALATION
    status: EscalationStatus = EscalationStatus.IDLE
    level: int = Field(default=0, ge=0, le=SLA_LEVEL)
    last_triggered_at: datetime | None = None
    resolved_at: datetime | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_resolved(self) -> bool:
        return self.status == EscalationStatus.RESOLVED

    def can_fire(self, level: int, now: datetime, cooldown_seconds: int) -> bool:
        """Check the claim guard for firing ``level`` at ``now``.

        A resolved state behaves like a fresh one: the item has been reopened.
        """
        if self.is_resolved:
            return True
        if self.level >= level:
            return False
        if self.last_triggered_at is None:
            return True
        elapsed = (as_utc(now) - as_utc(self.last_triggered_at)).total_seconds()
        return elapsed > cooldown_seconds

    def advance(self, level: int, now: datetime) -> "EscalationState":
        """Return the state after firing ``level``."""
        if level not in _LEVEL_STATUS:
            raise ValueError(f"Unknown escalation level: {level}")
        current_level = 0 if self.is_resolved else self.level
        if level <= current_level:
            raise ValueError(f"Cannot move from level {current_level} to {level}")
        return self.model_copy(
            update={
                "status": _LEVEL_STATUS[level],
                "level": level,
                "last_triggered_at": now,
                "resolved_at": None,
                "updated_at": now,
            }
        )

    def resolve(self, now: datetime) -> "EscalationState":
        """Return the state after the item was closed."""
        return self.model_copy(
            update={
                "status": EscalationStatus.RESOLVED,
                "resolved_at": now,
                "updated_at": now,
            }
        )
