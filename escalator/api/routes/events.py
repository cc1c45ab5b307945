"""Event ingestion API route."""

from typing import Any

from fastapi import APIRouter, Body
from pydantic import BaseModel

from escalator.api.deps import EngineDep
from escalator.ingest.normalizer import normalize
from escalator.models.activity import ActivityLogEntry
from escalator.models.event import EventKind
from escalator.schemas.common import APIResponse

router = APIRouter(prefix="/events", tags=["events"])


class EventAccepted(BaseModel):
    """Result of processing an ingested event."""

    event_id: str
    event_kind: EventKind
    entries: list[ActivityLogEntry]


@router.post("", response_model=APIResponse[EventAccepted])
async def ingest_event(
    engine: EngineDep,
    body: dict[str, Any] = Body(...),
) -> APIResponse[EventAccepted]:
    """Normalize a domain event and run it through the engine.

    Accepts a canonical event or a database change notification. An event
    id that was already processed yields no entries.
    """
    event = normalize(body)
    entries = await engine.on_event(event)
    return APIResponse(
        data=EventAccepted(
            event_id=event.event_id,
            event_kind=event.event_kind,
            entries=entries,
        )
    )
