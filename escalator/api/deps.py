"""API dependency injection."""

from typing import Annotated

from fastapi import Depends, Query, Request

from escalator.engine.pipeline import EscalationEngine
from escalator.schemas.common import PaginationParams
from escalator.storage.activity_log import ActivityLog
from escalator.storage.escalation_store import EscalationRuleStore
from escalator.storage.redis_client import get_redis
from escalator.storage.rule_store import RuleStore
from escalator.storage.state_store import EscalationStateStore


def get_rule_store() -> RuleStore:
    """Get rule store instance."""
    return RuleStore(get_redis())


def get_escalation_store() -> EscalationRuleStore:
    """Get escalation rule store instance."""
    return EscalationRuleStore(get_redis())


def get_state_store() -> EscalationStateStore:
    """Get escalation state store instance."""
    return EscalationStateStore(get_redis())


def get_activity_log() -> ActivityLog:
    """Get activity log instance."""
    return ActivityLog(get_redis())


def get_engine(request: Request) -> EscalationEngine:
    """Get the engine wired up at application startup."""
    return request.app.state.engine


# Type aliases for dependency injection
RuleStoreDep = Annotated[RuleStore, Depends(get_rule_store)]
EscalationRuleStoreDep = Annotated[EscalationRuleStore, Depends(get_escalation_store)]
StateStoreDep = Annotated[EscalationStateStore, Depends(get_state_store)]
ActivityLogDep = Annotated[ActivityLog, Depends(get_activity_log)]
EngineDep = Annotated[EscalationEngine, Depends(get_engine)]


def get_pagination(
    page: int = Query(default=1, ge=1, description="Page number"),
    page_size: int = Query(default=20, ge=1, le=100, description="Items per page"),
) -> PaginationParams:
    """Get pagination parameters from query."""
    return PaginationParams(page=page, page_size=page_size)


PaginationDep = Annotated[PaginationParams, Depends(get_pagination)]
