"""Escalation rule management API routes."""

import uuid
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query
from pydantic import ValidationError

from escalator.api.deps import EscalationRuleStoreDep, PaginationDep, StateStoreDep
from escalator.core.clock import utcnow
from escalator.models.escalation import EscalationRule
from escalator.models.item import ItemType
from escalator.models.rule import RuleMetadata
from escalator.schemas.common import APIResponse, PaginatedResponse
from escalator.schemas.escalation import (
    EscalationRuleCreate,
    EscalationRuleResponse,
    EscalationRuleUpdate,
)
from escalator.schemas.rule import RuleCreateResponse, RuleStatusUpdate, RuleValidateResponse

router = APIRouter(prefix="/escalation-rules", tags=["escalation-rules"])


def _build_rule(rule_id: str, data: EscalationRuleCreate, metadata: RuleMetadata) -> EscalationRule:
    return EscalationRule(
        rule_id=rule_id,
        metadata=metadata,
        **data.model_dump(exclude={"created_by"}),
    )


def _response(rule: EscalationRule) -> EscalationRuleResponse:
    return EscalationRuleResponse.model_validate(rule.model_dump())


@router.post("", response_model=APIResponse[RuleCreateResponse])
async def create_escalation_rule(
    data: EscalationRuleCreate,
    store: EscalationRuleStoreDep,
) -> APIResponse[RuleCreateResponse]:
    """Create an escalation rule."""
    rule_id = f"esc_{utcnow().strftime('%Y%m%d')}_{uuid.uuid4().hex[:8]}"
    created = await store.create(_build_rule(rule_id, data, RuleMetadata(created_by=data.created_by)))

    return APIResponse(
        data=RuleCreateResponse(
            rule_id=created.rule_id,
            created_at=created.metadata.created_at,
        )
    )


@router.post("/validate", response_model=APIResponse[RuleValidateResponse])
async def validate_escalation_rule(body: dict[str, Any] = Body(...)) -> APIResponse[RuleValidateResponse]:
    """Check an escalation rule definition without storing it."""
    try:
        data = EscalationRuleCreate.model_validate(body)
        _build_rule("validation", data, RuleMetadata())
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        return APIResponse(data=RuleValidateResponse(valid=False, errors=errors))
    return APIResponse(data=RuleValidateResponse(valid=True))


@router.get("", response_model=PaginatedResponse[EscalationRuleResponse])
async def list_escalation_rules(
    store: EscalationRuleStoreDep,
    pagination: PaginationDep,
    workspace_id: str = Query(..., description="Workspace whose rules to list"),
    item_type: ItemType | None = Query(default=None, description="Filter by item type"),
) -> PaginatedResponse[EscalationRuleResponse]:
    """List the escalation rules of a workspace."""
    rules = await store.list_by_workspace(workspace_id, item_type)

    page = [_response(r) for r in pagination.slice(rules)]
    return PaginatedResponse[EscalationRuleResponse].of(page, len(rules), pagination)


@router.get("/{rule_id}", response_model=APIResponse[EscalationRuleResponse])
async def get_escalation_rule(
    rule_id: str,
    store: EscalationRuleStoreDep,
) -> APIResponse[EscalationRuleResponse]:
    """Get an escalation rule by ID."""
    rule = await store.get(rule_id)
    if not rule:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    return APIResponse(data=_response(rule))


@router.put("/{rule_id}", response_model=APIResponse[EscalationRuleResponse])
async def replace_escalation_rule(
    rule_id: str,
    data: EscalationRuleCreate,
    store: EscalationRuleStoreDep,
) -> APIResponse[EscalationRuleResponse]:
    """Replace an escalation rule."""
    existing = await store.get(rule_id)
    if not existing:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    result = await store.update(rule_id, _build_rule(rule_id, data, existing.metadata.model_copy()))
    if not result:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    return APIResponse(data=_response(result))


@router.patch("/{rule_id}", response_model=APIResponse[EscalationRuleResponse])
async def update_escalation_rule(
    rule_id: str,
    data: EscalationRuleUpdate,
    store: EscalationRuleStoreDep,
) -> APIResponse[EscalationRuleResponse]:
    """Partially update an escalation rule."""
    result = await store.patch(rule_id, data.model_dump(exclude_unset=True))
    if not result:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    return APIResponse(data=_response(result))


@router.delete("/{rule_id}", response_model=APIResponse)
async def delete_escalation_rule(
    rule_id: str,
    store: EscalationRuleStoreDep,
    states: StateStoreDep,
) -> APIResponse:
    """Delete an escalation rule and its per-item states."""
    deleted = await store.delete(rule_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    await states.purge_rule(rule_id)
    return APIResponse(message=f"Escalation rule {rule_id} deleted")


@router.patch("/{rule_id}/status", response_model=APIResponse[EscalationRuleResponse])
async def update_escalation_rule_status(
    rule_id: str,
    data: RuleStatusUpdate,
    store: EscalationRuleStoreDep,
) -> APIResponse[EscalationRuleResponse]:
    """Activate or deactivate an escalation rule."""
    updated = await store.set_active(rule_id, data.is_active)
    if not updated:
        raise HTTPException(status_code=404, detail=f"Escalation rule {rule_id} not found")

    rule = await store.get(rule_id)
    return APIResponse(data=_response(rule))
