"""Automation rule management API routes."""

import uuid
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query
from pydantic import ValidationError

from escalator.api.deps import PaginationDep, RuleStoreDep, StateStoreDep
from escalator.core.clock import utcnow
from escalator.models.item import ItemType
from escalator.models.rule import Rule, RuleMetadata
from escalator.schemas.common import APIResponse, PaginatedResponse
from escalator.schemas.rule import (
    RuleCreate,
    RuleCreateResponse,
    RuleResponse,
    RuleStatusUpdate,
    RuleUpdate,
    RuleValidateResponse,
)

router = APIRouter(prefix="/rules", tags=["rules"])


def _not_found(rule_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Rule {rule_id} not found")


def _new_rule_id() -> str:
    return f"rule_{utcnow().strftime('%Y%m%d')}_{uuid.uuid4().hex[:8]}"


def _build_rule(rule_id: str, data: RuleCreate, metadata: RuleMetadata) -> Rule:
    return Rule(
        rule_id=rule_id,
        workspace_id=data.workspace_id,
        item_type=data.item_type,
        name=data.name,
        description=data.description,
        is_active=data.is_active,
        trigger=data.trigger,
        action=data.action,
        metadata=metadata,
    )


@router.post("", response_model=APIResponse[RuleCreateResponse])
async def create_rule(
    data: RuleCreate,
    store: RuleStoreDep,
) -> APIResponse[RuleCreateResponse]:
    """Create a new rule."""
    rule = _build_rule(_new_rule_id(), data, RuleMetadata(created_by=data.created_by))
    created = await store.create(rule)

    return APIResponse(
        data=RuleCreateResponse(
            rule_id=created.rule_id,
            created_at=created.metadata.created_at,
        )
    )


@router.post("/validate", response_model=APIResponse[RuleValidateResponse])
async def validate_rule(body: dict[str, Any] = Body(...)) -> APIResponse[RuleValidateResponse]:
    """Check a rule definition without storing it."""
    try:
        RuleCreate.model_validate(body)
        Rule.model_validate({**body, "rule_id": "validation"})
    except ValidationError as e:
        return APIResponse(
            data=RuleValidateResponse(
                valid=False,
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            )
        )
    return APIResponse(data=RuleValidateResponse(valid=True))


@router.get("", response_model=PaginatedResponse[RuleResponse])
async def list_rules(
    store: RuleStoreDep,
    pagination: PaginationDep,
    workspace_id: str | None = Query(default=None, description="Filter by workspace"),
    item_type: ItemType | None = Query(default=None, description="Filter by item type"),
    is_active: bool | None = Query(default=None, description="Filter by active status"),
    name_contains: str | None = Query(default=None, description="Filter by name substring"),
) -> PaginatedResponse[RuleResponse]:
    """List rules with optional filtering."""
    if workspace_id:
        rules = await store.list_by_workspace(workspace_id, item_type)
    else:
        rules = await store.list_all()
        if item_type is not None:
            rules = [r for r in rules if r.item_type == item_type]
        rules.sort(key=lambda r: r.metadata.created_at)

    if is_active is not None:
        rules = [r for r in rules if r.is_active == is_active]
    if name_contains:
        needle = name_contains.lower()
        rules = [r for r in rules if needle in r.name.lower()]

    page = [RuleResponse.from_rule(r) for r in pagination.slice(rules)]
    return PaginatedResponse[RuleResponse].of(page, len(rules), pagination)


@router.get("/{rule_id}", response_model=APIResponse[RuleResponse])
async def get_rule(
    rule_id: str,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Get a single rule by ID."""
    rule = await store.get(rule_id)
    if not rule:
        raise _not_found(rule_id)

    return APIResponse(data=RuleResponse.from_rule(rule))


@router.put("/{rule_id}", response_model=APIResponse[RuleResponse])
async def replace_rule(
    rule_id: str,
    data: RuleCreate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Replace an existing rule."""
    result = await store.update(rule_id, _build_rule(rule_id, data, RuleMetadata()))
    if not result:
        raise _not_found(rule_id)

    return APIResponse(data=RuleResponse.from_rule(result))


@router.patch("/{rule_id}", response_model=APIResponse[RuleResponse])
async def update_rule(
    rule_id: str,
    data: RuleUpdate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Partially update an existing rule."""
    result = await store.patch(rule_id, data.model_dump(exclude_unset=True))
    if not result:
        raise _not_found(rule_id)

    return APIResponse(data=RuleResponse.from_rule(result))


@router.delete("/{rule_id}", response_model=APIResponse)
async def delete_rule(
    rule_id: str,
    store: RuleStoreDep,
    states: StateStoreDep,
) -> APIResponse:
    """Delete a rule and the escalation states recorded for it."""
    if not await store.delete(rule_id):
        raise _not_found(rule_id)

    await states.purge_rule(rule_id)
    return APIResponse(message=f"Rule {rule_id} deleted")


@router.patch("/{rule_id}/status", response_model=APIResponse[RuleResponse])
async def update_rule_status(
    rule_id: str,
    data: RuleStatusUpdate,
    store: RuleStoreDep,
) -> APIResponse[RuleResponse]:
    """Activate or deactivate a rule."""
    if not await store.set_active(rule_id, data.is_active):
        raise _not_found(rule_id)
    return APIResponse(data=RuleResponse.from_rule(await store.get(rule_id)))
