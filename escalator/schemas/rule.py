"""Automation rule API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from escalator.models.item import ItemType
from escalator.models.rule import Action, Rule, RuleMetadata, RuleSource, Trigger


class RuleCreate(BaseModel):
    """Schema for creating a new rule."""

    workspace_id: str = Field(..., min_length=1, description="Owning workspace")
    item_type: ItemType = Field(..., description="Item type the rule applies to")
    name: str = Field(..., min_length=1, max_length=100, description="Rule name")
    description: str = Field(default="", max_length=500, description="Rule description")
    is_active: bool = Field(default=True, description="Whether rule is active")
    trigger: Trigger
    action: Action
    created_by: str = Field(default="system", description="Author of the rule")


class RuleUpdate(BaseModel):
    """Schema for partially updating a rule."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)
    is_active: bool | None = None
    trigger: Trigger | None = None
    action: Action | None = None


class RuleStatusUpdate(BaseModel):
    """Schema for activating or deactivating a rule."""

    is_active: bool = Field(..., description="Whether rule is active")


class RuleResponse(BaseModel):
    """Schema for rule response."""

    rule_id: str
    workspace_id: str
    item_type: ItemType
    name: str
    description: str
    is_active: bool
    source: RuleSource
    trigger_type: str
    action_type: str
    trigger: Trigger
    action: Action
    metadata: RuleMetadata

    @classmethod
    def from_rule(cls, rule: Rule) -> "RuleResponse":
        return cls(
            **rule.model_dump(),
            trigger_type=rule.trigger_type.value,
            action_type=rule.action_type.value,
        )


class RuleCreateResponse(BaseModel):
    """Schema for rule creation response."""

    rule_id: str = Field(..., description="Created rule ID")
    created_at: datetime = Field(..., description="Creation timestamp")


class RuleValidateResponse(BaseModel):
    """Outcome of validating a rule definition without storing it."""

    valid: bool
    errors: list[dict[str, Any]] = Field(default_factory=list)
