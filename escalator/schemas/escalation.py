"""Escalation rule API schemas."""

from pydantic import BaseModel, Field

from escalator.models.escalation import EscalationRule
from escalator.models.item import EscalateTo, ItemType


class EscalationRuleCreate(BaseModel):
    """Schema for creating an escalation rule."""

    workspace_id: str = Field(..., min_length=1)
    item_type: ItemType
    trigger_after_hours: int = Field(..., ge=1)
    sla_hours: int | None = Field(default=None, ge=1)
    escalate_to: EscalateTo = EscalateTo.PARENT
    escalation_path: list[str] = Field(default_factory=list)
    notify_roles: list[str] = Field(default_factory=list)
    notification_channels: list[str] = Field(default_factory=list)
    auto_reassign: bool = False
    is_active: bool = True
    created_by: str = "system"


class EscalationRuleUpdate(BaseModel):
    """Schema for partially updating an escalation rule."""

    trigger_after_hours: int | None = Field(default=None, ge=1)
    sla_hours: int | None = Field(default=None, ge=1)
    escalate_to: EscalateTo | None = None
    escalation_path: list[str] | None = None
    notify_roles: list[str] | None = None
    notification_channels: list[str] | None = None
    auto_reassign: bool | None = None
    is_active: bool | None = None


class EscalationRuleResponse(EscalationRule):
    """Response model for escalation rules."""

    pass
