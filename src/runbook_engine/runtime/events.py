from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from runbook_engine.session.models import utc_iso_now

logger = logging.getLogger(__name__)

STEP_STARTED = "step.started"
STEP_COMPLETED = "step.completed"
STEP_SKIPPED = "step.skipped"
OUTCOME_REACHED = "outcome.reached"
INVOKE_STARTED = "invoke.started"
INVOKE_COMPLETED = "invoke.completed"
ITERATION_STARTED = "iteration.started"
ITERATION_PASS = "iteration.pass"
ITERATION_CONVERGED = "iteration.converged"
ITERATION_FAILED = "iteration.failed"
INPUT_REQUIRED = "input.required"
RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"


@dataclass(frozen=True, slots=True)
class EngineEvent:
    """A notification emitted while the engine advances a run.

    Events describe what happened; they never drive control flow.
    """

    type: str
    payload: dict[str, object]
    at: str = field(default_factory=utc_iso_now)

    def to_json(self) -> dict[str, object]:
        return {"type": self.type, "at": self.at, "payload": self.payload}


class EventSink(Protocol):
    def emit(self, event: EngineEvent) -> None: ...


class EventRecorder:
    """Buffers events until the request handler drains them into its response."""

    def __init__(self) -> None:
        self._events: list[EngineEvent] = []

    def emit(self, event: EngineEvent) -> None:
        logger.debug("Engine event", extra={"event_type": event.type, "payload": event.payload})
        self._events.append(event)

    @property
    def events(self) -> list[EngineEvent]:
        return list(self._events)

    def drain(self) -> list[EngineEvent]:
        events, self._events = self._events, []
        return events
