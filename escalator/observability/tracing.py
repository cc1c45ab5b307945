"""Per-event log correlation through structlog context variables."""

import uuid
from contextlib import contextmanager
from typing import Iterator

import structlog

from escalator.models.event import CanonicalEvent


def new_trace_id() -> str:
    """Generate a new trace ID."""
    return uuid.uuid4().hex[:16]


@contextmanager
def event_trace(event: CanonicalEvent, trace_id: str | None = None) -> Iterator[str]:
    """Bind a trace ID and the event's identity to every log record in the block.

    The previous bindings are restored on exit, so traces nest.
    """
    trace_id = trace_id or new_trace_id()
    with structlog.contextvars.bound_contextvars(
        trace_id=trace_id,
        event_id=event.event_id,
        event_kind=event.event_kind.value,
        item_id=event.item_id,
    ):
        yield trace_id
