"""Automation rule domain models.

Triggers and actions are closed tagged unions discriminated on ``type``, so a
rule can only be built with the fields its trigger and action kinds require.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from escalator.core.clock import utcnow
from escalator.core.errors import ConfigurationError
from escalator.engine.expression import get_expression_evaluator
from escalator.models.item import EscalateTo, ItemType, Priority, is_valid_status
from escalator.models.notification import NotificationPriority


class TriggerType(str, Enum):
    """Trigger kinds."""

    ITEM_CREATED = "ITEM_CREATED"
    STATUS_CHANGED = "STATUS_CHANGED"
    DUE_DATE_APPROACHING = "DUE_DATE_APPROACHING"
    TIME_ELAPSED = "TIME_ELAPSED"


class ActionType(str, Enum):
    """Action kinds."""

    CHANGE_STATUS = "CHANGE_STATUS"
    UPDATE_PRIORITY = "UPDATE_PRIORITY"
    SEND_NOTIFICATION = "SEND_NOTIFICATION"
    ADD_TAG = "ADD_TAG"
    REASSIGN = "REASSIGN"


class RuleSource(str, Enum):
    """Where a rule comes from."""

    AUTOMATION = "automation"
    ESCALATION = "escalation"


class _TriggerBase(BaseModel):
    condition: str | None = Field(
        default=None,
        description="Optional expression over the item snapshot, e.g. \"priority == 'URGENT'\"",
    )


class ItemCreatedTrigger(_TriggerBase):
    type: Literal["ITEM_CREATED"] = "ITEM_CREATED"


class StatusChangedTrigger(_TriggerBase):
    type: Literal["STATUS_CHANGED"] = "STATUS_CHANGED"
    to_status: str = Field(..., description="Status the item moves into")
    from_status: str | None = Field(default=None, description="Previous status, any if unset")

    @field_validator("to_status", "from_status", mode="before")
    @classmethod
    def upper(cls, value: str | None) -> str | None:
        return value.upper() if isinstance(value, str) else value


class DueDateApproachingTrigger(_TriggerBase):
    type: Literal["DUE_DATE_APPROACHING"] = "DUE_DATE_APPROACHING"
    hours_before_due: int = Field(default=24, ge=1, le=168, description="Lead time in hours")


class TimeElapsedTrigger(_TriggerBase):
    type: Literal["TIME_ELAPSED"] = "TIME_ELAPSED"
    after_hours: int = Field(..., ge=1, description="Hours since the escalation clock started")
    level: int = Field(default=1, ge=1, le=2, description="Escalation level this trigger fires")


Trigger = Annotated[
    Union[ItemCreatedTrigger, StatusChangedTrigger, DueDateApproachingTrigger, TimeElapsedTrigger],
    Field(discriminator="type"),
]


class ChangeStatusAction(BaseModel):
    type: Literal["CHANGE_STATUS"] = "CHANGE_STATUS"
    new_status: str = Field(..., description="Status to write")

    @field_validator("new_status", mode="before")
    @classmethod
    def upper(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value


class UpdatePriorityAction(BaseModel):
    type: Literal["UPDATE_PRIORITY"] = "UPDATE_PRIORITY"
    new_priority: Priority = Field(..., description="Priority to write")


class SendNotificationAction(BaseModel):
    type: Literal["SEND_NOTIFICATION"] = "SEND_NOTIFICATION"
    title: str = Field(..., min_length=1, max_length=200, description="Title template")
    message: str = Field(default="", max_length=2000, description="Body template")
    notify_assignees: bool = Field(default=True)
    notify_creator: bool = Field(default=False)
    notify_roles: list[str] = Field(default_factory=list, description="Workspace roles to notify")
    channels: list[str] = Field(default_factory=list, description="Preferred delivery channels")
    priority: NotificationPriority = Field(default=NotificationPriority.NORMAL)
    escalate_to: EscalateTo | None = Field(
        default=None,
        description="Resolve role recipients in this escalation target instead of the item's workspace",
    )
    escalation_path: list[str] = Field(default_factory=list)


class AddTagAction(BaseModel):
    type: Literal["ADD_TAG"] = "ADD_TAG"
    tag: str = Field(..., min_length=1, max_length=50)

    @field_validator("tag")
    @classmethod
    def strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("tag must not be blank")
        return value


class ReassignAction(BaseModel):
    type: Literal["REASSIGN"] = "REASSIGN"
    escalate_to: EscalateTo = Field(..., description="Fallback target when no path resolves")
    escalation_path: list[str] = Field(default_factory=list, description="Ordered workspace fallbacks")
    notify_roles: list[str] = Field(default_factory=list)
    channels: list[str] = Field(default_factory=list)
    priority: NotificationPriority = Field(default=NotificationPriority.HIGH)


Action = Annotated[
    Union[ChangeStatusAction, UpdatePriorityAction, SendNotificationAction, AddTagAction, ReassignAction],
    Field(discriminator="type"),
]


class RuleMetadata(BaseModel):
    """Rule metadata."""

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    created_by: str = Field(default="system")
    version: int = Field(default=1)


class Rule(BaseModel):
    """Complete automation rule model."""

    rule_id: str = Field(..., description="Rule unique identifier")
    workspace_id: str = Field(..., description="Owning workspace")
    item_type: ItemType = Field(..., description="Item type the rule applies to")
    name: str = Field(..., description="Rule name")
    description: str = Field(default="", description="Rule description")
    is_active: bool = Field(default=True, description="Whether rule is active")
    source: RuleSource = Field(default=RuleSource.AUTOMATION)
    trigger: Trigger
    action: Action
    metadata: RuleMetadata = Field(default_factory=RuleMetadata)

    @model_validator(mode="after")
    def validate_config(self) -> "Rule":
        """Ensure trigger and action configuration fit the item type."""
        try:
            self.check_config()
        except ConfigurationError as e:
            raise ValueError(str(e)) from e
        return self

    @property
    def trigger_type(self) -> TriggerType:
        return TriggerType(self.trigger.type)

    @property
    def action_type(self) -> ActionType:
        return ActionType(self.action.type)

    def check_config(self) -> None:
        """Validate configuration shape against the item type.

        Raises:
            ConfigurationError: If a status is unknown for the item type or a
                trigger/action kind is not allowed for the rule source
        """
        trigger = self.trigger
        action = self.action

        if isinstance(trigger, StatusChangedTrigger):
            self._check_status(trigger.to_status, "trigger to_status")
            if trigger.from_status is not None:
                self._check_status(trigger.from_status, "trigger from_status")
                if trigger.from_status == trigger.to_status:
                    raise ConfigurationError("from_status and to_status must differ")

        if trigger.condition is not None:
            valid, error = get_expression_evaluator().validate(trigger.condition)
            if not valid:
                raise ConfigurationError(f"Invalid trigger condition: {error}")

        if isinstance(action, ChangeStatusAction):
            self._check_status(action.new_status, "new_status")

        if self.source != RuleSource.ESCALATION:
            if isinstance(trigger, TimeElapsedTrigger):
                raise ConfigurationError("TIME_ELAPSED triggers are reserved for escalation rules")
            if isinstance(action, ReassignAction):
                raise ConfigurationError("REASSIGN actions are reserved for escalation rules")

    def _check_status(self, status: str, field_name: str) -> None:
        if not is_valid_status(self.item_type, status):
            raise ConfigurationError(
                f"Unknown {field_name} '{status}' for {self.item_type.value}"
            )
