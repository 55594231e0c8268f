"""Exception hierarchy for the runbook engine.

Every error raised on purpose by the engine derives from :class:`RunbookError`
so the CLI and HTTP layers can map them to exit codes / status codes in one
place.
"""

from __future__ import annotations


class RunbookError(Exception):
    """Base class for all engine errors."""


class WorkflowValidationError(RunbookError, ValueError):
    """Raised when a workflow file cannot be parsed or is semantically invalid."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class ResumeError(RunbookError):
    """Raised when a persisted session cannot be rebuilt against its workflow."""


class UnknownRun(ResumeError, LookupError):
    """Raised when a run id has no in-memory session and no persisted state."""


class IterationDidNotConverge(RunbookError):
    def __init__(self, key: str, passes: int, until: str) -> None:
        self.key = key
        self.passes = passes
        self.until = until
        super().__init__(f"iterate did not converge after {passes} passes (until: {until})")


class InvokeError(RunbookError):
    """Raised when a child workflow cannot be resolved or loaded."""


class InvokeDepthExceeded(InvokeError):
    def __init__(self, depth: int, limit: int) -> None:
        self.depth = depth
        self.limit = limit
        super().__init__(f"invoke chain depth {depth} exceeds maximum {limit}")


class PendingUserConflict(RunbookError):
    """Raised when a second step would be parked while one is already awaiting the user."""


class NoPendingStep(RunbookError):
    """Raised when a user action targets a pending step but none is parked."""


class UnknownOutcome(RunbookError, ValueError):
    """Raised when a chosen outcome does not exist on the pending step."""


class EvidenceRequired(RunbookError):
    """Raised by evidence collectors when the operator has not supplied input yet."""

    def __init__(self, step_id: str, missing: list[str]) -> None:
        self.step_id = step_id
        self.missing = missing
        super().__init__(f"step {step_id!r} requires input: {', '.join(missing)}")


class ReplayMismatch(RunbookError):
    """Raised when a replayed command has no unused recorded entry."""

    def __init__(self, argv: list[str]) -> None:
        self.argv = argv
        super().__init__(f"replay: no recorded response for command: {' '.join(argv)}")


class StepCancelled(RunbookError):
    """Raised when a step is interrupted by the run's cancellation signal."""
