"""Session persistence: the records written to `session.json` and the store."""

from runbook_engine.session.models import (
    ChildRun,
    OutcomeRecord,
    PendingNodeRef,
    RunState,
    SessionState,
    StepResult,
)

__all__ = [
    "ChildRun",
    "OutcomeRecord",
    "PendingNodeRef",
    "RunState",
    "SessionState",
    "StepResult",
]
