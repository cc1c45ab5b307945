"""Normalizes incoming payloads into canonical events.

Two shapes are accepted: the canonical event itself, and the change
notification the workspace database emits for its item tables::

    {"type": "UPDATE", "table": "workspace_tasks",
     "record": {...}, "old_record": {...}}
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from escalator.core.errors import EventNormalizationError
from escalator.core.logging import get_logger
from escalator.models.event import TIMER_EVENT_KINDS, CanonicalEvent, EventKind
from escalator.models.item import ItemType

logger = get_logger(__name__)

TABLE_ITEM_TYPES = {
    "workspace_tasks": ItemType.TASK,
    "workspace_budget_requests": ItemType.BUDGET_REQUEST,
    "workspace_resource_requests": ItemType.RESOURCE_REQUEST,
}

# Column aliases per snapshot field, first present wins
_WORKSPACE_COLUMNS = ("workspace_id", "requesting_workspace_id")
_CREATOR_COLUMNS = ("created_by", "requested_by", "creator_id")


class DatabaseChange(BaseModel):
    """Row change notification for an item table."""

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None


def normalize(body: dict[str, Any]) -> CanonicalEvent:
    """Turn an ingest payload into a canonical event.

    Args:
        body: Decoded JSON payload

    Returns:
        Canonical event

    Raises:
        EventNormalizationError: If the payload has neither accepted shape, or
            claims a kind only the scanner may raise
    """
    if not isinstance(body, dict):
        raise EventNormalizationError("Event payload must be a JSON object")

    if "event_kind" in body:
        try:
            event = CanonicalEvent.model_validate(body)
        except ValidationError as e:
            raise EventNormalizationError(f"Invalid canonical event: {e}") from e
        if event.event_kind in TIMER_EVENT_KINDS:
            raise EventNormalizationError(f"{event.event_kind.value} events are raised by the scanner only")
        return event

    if "table" in body and "type" in body:
        try:
            change = DatabaseChange.model_validate(body)
        except ValidationError as e:
            raise EventNormalizationError(f"Invalid change notification: {e}") from e
        return _from_change(change)

    raise EventNormalizationError("Unrecognized event payload")


def _from_change(change: DatabaseChange) -> CanonicalEvent:
    item_type = TABLE_ITEM_TYPES.get(change.table)
    if item_type is None:
        raise EventNormalizationError(f"Unsupported table: {change.table}")

    row = change.old_record if change.type == "DELETE" else change.record
    if not row:
        raise EventNormalizationError(f"{change.type} on {change.table} carries no record")

    snapshot = _snapshot(row)
    if not snapshot.get("id") or not snapshot.get("workspace_id"):
        raise EventNormalizationError(f"{change.table} record lacks id or workspace")

    old = _snapshot(change.old_record) if change.old_record else {}
    from_status = old.get("status")
    to_status = snapshot.get("status")

    if change.type == "INSERT":
        kind = EventKind.CREATED
    elif change.type == "DELETE":
        kind = EventKind.DELETED
    elif old and from_status != to_status:
        kind = EventKind.STATUS_CHANGED
    elif old and old.get("due_date") != snapshot.get("due_date"):
        kind = EventKind.DUE_DATE_CHANGED
    else:
        kind = EventKind.UPDATED

    fields: dict[str, Any] = {
        "item_id": snapshot["id"],
        "item_type": item_type,
        "workspace_id": snapshot["workspace_id"],
        "event_kind": kind,
        "from_status": from_status if kind == EventKind.STATUS_CHANGED else None,
        "to_status": to_status,
        "payload": {**snapshot, "item_type": item_type.value},
    }
    changed_at = row.get("updated_at") or (row.get("created_at") if kind == EventKind.CREATED else None)
    if changed_at:
        # Redeliveries of one row change collapse onto one event id
        fields["event_id"] = f"db_{change.table}_{snapshot['id']}_{kind.value}_{changed_at}"
        fields["occurred_at"] = changed_at

    try:
        event = CanonicalEvent.model_validate(fields)
    except ValidationError as e:
        raise EventNormalizationError(f"Invalid {change.table} record: {e}") from e

    logger.debug(
        "Change notification normalized",
        table=change.table,
        change_type=change.type,
        event_kind=kind.value,
        item_id=event.item_id,
    )
    return event


def _snapshot(row: dict[str, Any]) -> dict[str, Any]:
    """Map table columns onto item snapshot fields."""
    snapshot = dict(row)
    snapshot["workspace_id"] = _first(row, _WORKSPACE_COLUMNS)
    snapshot["creator_id"] = _first(row, _CREATOR_COLUMNS)

    if "assignee_ids" not in row:
        assigned_to = row.get("assigned_to")
        snapshot["assignee_ids"] = [assigned_to] if assigned_to else []

    for column in ("status", "priority"):
        if isinstance(row.get(column), str):
            snapshot[column] = row[column].upper()

    if snapshot.get("tags") is None:
        snapshot["tags"] = []
    return snapshot


def _first(row: dict[str, Any], columns: tuple[str, ...]) -> Any:
    for column in columns:
        if row.get(column):
            return row[column]
    return None
