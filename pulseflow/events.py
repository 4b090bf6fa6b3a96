"""
State-change notifications emitted by the engine.

Consumers (CLI, dashboards, loggers) subscribe to ``event_bus`` and keep
their own projections; the database stays the source of truth.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    WORKFLOW_CREATED = "workflow.created"
    WORKFLOW_STAGE_CHANGED = "workflow.stage_changed"
    WORKFLOW_REWOUND = "workflow.rewound"
    WORKFLOW_ARCHIVED = "workflow.archived"
    WORKFLOW_DELETED = "workflow.deleted"
    WORKFLOW_ERROR = "workflow.error"

    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_CLEARED = "approval.cleared"
    ARTIFACT_APPROVED = "approval.approved"
    ARTIFACT_DENIED = "approval.denied"

    PULSES_CREATED = "pulse.created"
    PULSE_STARTED = "pulse.started"
    PULSE_SUCCEEDED = "pulse.succeeded"
    PULSE_FAILED = "pulse.failed"
    PULSE_STOPPED = "pulse.stopped"
    PULSE_REJECTED = "pulse.rejected"

    PREFLIGHT_STARTED = "preflight.started"
    PREFLIGHT_PROGRESS = "preflight.progress"
    PREFLIGHT_COMPLETED = "preflight.completed"
    PREFLIGHT_FAILED = "preflight.failed"

    SESSION_CREATED = "session.created"
    SESSION_STATUS_CHANGED = "session.status_changed"
    SESSION_DELETED = "session.deleted"

    SUBTASK_CREATED = "subtask.created"
    SUBTASK_STARTED = "subtask.started"
    SUBTASK_FINISHED = "subtask.finished"

    COST_RECORDED = "cost.recorded"


@dataclass
class EngineEvent:
    """A single state change."""

    id: UUID = field(default_factory=uuid4)
    type: EventType = EventType.WORKFLOW_CREATED
    workflow_id: str | None = None
    entity_id: str | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "entity_id": self.entity_id,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], Awaitable[None] | None]


class EventEmitter:
    """Emits events to registered handlers."""

    def __init__(self) -> None:
        self._handlers: list[EventHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def off_event(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def emit(self, event: EngineEvent) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(event)
                if hasattr(result, "__await__"):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", event.type.value)


event_bus = EventEmitter()

# Events published inside a held block wait here until the block succeeds.
_held_events: ContextVar[list[EngineEvent] | None] = ContextVar("pulseflow_held_events", default=None)


@asynccontextmanager
async def hold_events() -> AsyncGenerator[None]:
    """Delay events published in the block until it exits without error.

    Nested blocks hand their events to the enclosing one, so nothing is
    delivered before the outermost block succeeds. Events from a block that
    raises are dropped along with the writes they describe.
    """
    outer = _held_events.get()
    held: list[EngineEvent] = []
    token = _held_events.set(held)
    try:
        yield
    finally:
        _held_events.reset(token)

    if outer is not None:
        outer.extend(held)
        return
    for event in held:
        await event_bus.emit(event)


async def publish(
    event_type: EventType,
    *,
    workflow_id: str | None = None,
    entity_id: str | None = None,
    message: str = "",
    **data: Any,
) -> EngineEvent:
    event = EngineEvent(
        type=event_type,
        workflow_id=workflow_id,
        entity_id=entity_id,
        message=message,
        data=data,
    )
    held = _held_events.get()
    if held is not None:
        held.append(event)
    else:
        await event_bus.emit(event)
    return event
