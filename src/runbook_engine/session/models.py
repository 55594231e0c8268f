"""Persisted records: step results, outcomes and the session document.

These models are what `session.json` contains. Timestamps are ISO-8601
strings, as written by :func:`utc_iso_now`.
"""

from __future__ import annotations

import json
import secrets
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

StepStatus = Literal["passed", "failed", "skipped"]
RunStatus = Literal["running", "awaiting_user", "outcome", "completed", "failed"]

SESSION_VERSION = 1


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


def new_run_id() -> str:
    """Sortable run id: UTC timestamp plus a random suffix."""

    return f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(4)}"


def decode_capture(raw: str) -> Any:
    """Decode JSON-looking captures (objects, arrays) so conditions can index them."""

    text = raw.strip()
    if not text.startswith(("[", "{")):
        return raw
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return raw


class AssertionResult(BaseModel):
    type: str
    expected: str = ""
    actual: str = ""
    passed: bool
    message: str = ""


class EvidenceValue(BaseModel):
    kind: Literal["text", "checklist", "attachment", "approval"]
    value: str = ""
    items: dict[str, bool] = Field(default_factory=dict)
    path: str = ""
    sha256: str = ""
    size: int = 0
    role: str = ""


class StepResult(BaseModel):
    run_id: str
    step_id: str
    step_index: int
    status: StepStatus
    actor: Literal["engine", "human"] = "engine"
    started_at: str
    ended_at: str = ""
    evidence: dict[str, EvidenceValue] = Field(default_factory=dict)
    captures: dict[str, str] = Field(default_factory=dict)
    assertions: list[AssertionResult] = Field(default_factory=list)
    error: str = ""


class NextWorkflowRef(BaseModel):
    file: str
    inputs: dict[str, str] = Field(default_factory=dict)


class OutcomeRecord(BaseModel):
    state: str
    step_id: str
    recommendation: str = ""
    gate_triggered: bool = False
    next_workflow: NextWorkflowRef | None = None


class ChildRun(BaseModel):
    run_id: str
    workflow: str
    outcome: str = ""
    status: Literal["completed", "failed"] = "completed"


class RecordedCommand(BaseModel):
    argv: list[str]
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class PendingNodeRef(BaseModel):
    """Serialized queue entry.

    ``step`` entries carry ``step_id``; every other kind carries
    ``iterate_key`` plus the watchpoint position.
    """

    kind: Literal["step", "iterate", "convergence_wp", "list_wp"]
    depth: int = 0
    step_id: str = ""
    iterate_key: str = ""
    pass_index: int = Field(default=0, alias="pass")
    max: int = 0
    items: list[str] = Field(default_factory=list)
    index: int = 0
    as_var: str = ""

    model_config = ConfigDict(populate_by_name=True)


class RunState(BaseModel):
    """Mutable state of one workflow level (the root run or an invoked child)."""

    run_id: str
    workflow_path: str
    workflow_name: str = ""
    parent_run_id: str = ""
    chain_depth: int = 0
    started_at: str = Field(default_factory=utc_iso_now)
    vars: dict[str, str] = Field(default_factory=dict)
    captures: dict[str, str] = Field(default_factory=dict)
    history: list[StepResult] = Field(default_factory=list)
    outcome: OutcomeRecord | None = None
    child_runs: list[ChildRun] = Field(default_factory=list)

    def set_var(self, name: str, value: str) -> None:
        """Set a value visible both as a variable and as a capture."""

        self.vars[name] = value
        self.captures[name] = value

    def env(self) -> dict[str, Any]:
        """Variables overlaid with captures, for conditions and templates."""

        values: dict[str, Any] = dict(self.vars)
        for name, raw in self.captures.items():
            values[name] = decode_capture(raw)
        return values

    def executed_step_ids(self) -> set[str]:
        return {result.step_id for result in self.history}


class LevelRecord(RunState):
    step_index: int = 0
    queue: list[PendingNodeRef] = Field(default_factory=list)


class InvokeFrameRef(LevelRecord):
    """A suspended parent level, outermost first in :attr:`SessionState.invoke_stack`."""

    invoke_step_id: str
    invoked_at: str = ""
    gate_stop_if: list[str] = Field(default_factory=list)
    gate_on_error: str = ""
    capture: dict[str, str] = Field(default_factory=dict)


class SessionState(LevelRecord):
    """Everything needed to continue a run from another process.

    The inherited level fields describe the *active* level; ``root_run_id`` and
    ``root_workflow_path`` identify the run as a whole.
    """

    version: int = SESSION_VERSION
    root_run_id: str
    root_workflow_path: str
    mode: Literal["real", "dry-run", "replay"]
    actor: str = ""
    cwd: str = ""
    status: RunStatus = "running"
    error: str = ""
    scenario_dir: str = ""
    rebase_time: str = ""
    pending_user: PendingNodeRef | None = None
    invoke_stack: list[InvokeFrameRef] = Field(default_factory=list)
    evidence: dict[str, dict[str, EvidenceValue]] = Field(default_factory=dict)
    evidence_log: dict[str, dict[str, EvidenceValue]] = Field(default_factory=dict)
    commands: list[RecordedCommand] = Field(default_factory=list)
    saved_at: str = Field(default_factory=utc_iso_now)
