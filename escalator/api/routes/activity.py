"""Activity log and escalation state API routes."""

from fastapi import APIRouter

from escalator.api.deps import ActivityLogDep, PaginationDep, StateStoreDep
from escalator.models.activity import ActivityLogEntry
from escalator.models.escalation import EscalationState, StateSource
from escalator.schemas.common import APIResponse, PaginatedResponse

router = APIRouter(tags=["activity"])


@router.get("/rules/{rule_id}/history", response_model=PaginatedResponse[ActivityLogEntry])
async def get_rule_history(
    rule_id: str,
    log: ActivityLogDep,
    pagination: PaginationDep,
) -> PaginatedResponse[ActivityLogEntry]:
    """Get the firings of a rule, newest first.

    History outlives the rule, so a deleted rule still has one.
    """
    entries = await log.list_for_rule(rule_id, pagination.offset, pagination.page_size)
    return PaginatedResponse[ActivityLogEntry].of(entries, await log.count_for_rule(rule_id), pagination)


@router.get("/items/{item_id}/activity", response_model=PaginatedResponse[ActivityLogEntry])
async def get_item_activity(
    item_id: str,
    log: ActivityLogDep,
    pagination: PaginationDep,
) -> PaginatedResponse[ActivityLogEntry]:
    """Get every rule firing that targeted an item, newest first."""
    entries = await log.list_for_item(item_id, pagination.offset, pagination.page_size)
    return PaginatedResponse[ActivityLogEntry].of(entries, await log.count_for_item(item_id), pagination)


@router.get("/items/{item_id}/escalations", response_model=APIResponse[list[EscalationState]])
async def get_item_escalations(
    item_id: str,
    states: StateStoreDep,
) -> APIResponse[list[EscalationState]]:
    """Get the escalation states of an item."""
    return APIResponse(data=await states.list_for_item(item_id))


@router.delete("/items/{item_id}/escalations", response_model=APIResponse)
async def reset_item_escalations(
    item_id: str,
    states: StateStoreDep,
    source: StateSource | None = None,
) -> APIResponse:
    """Forget an item's escalation states so its rules can fire again."""
    count = await states.reset_item(item_id, source)
    return APIResponse(message=f"Reset {count} escalation state(s) for item {item_id}")
