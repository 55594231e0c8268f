"""Request handlers over a run.

:class:`RunSession` is the explicit session object every transport (CLI,
HTTP) threads through its handlers. Each mutating handler persists the
session before returning, so any later request, from this process or
another, can pick the run up with :meth:`RunSession.resume`.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from runbook_engine.config import EngineSettings, RunMode
from runbook_engine.errors import RunbookError, WorkflowValidationError
from runbook_engine.runtime.engine import AdvanceResult, ContinuationEngine
from runbook_engine.runtime.events import EngineEvent, EventRecorder
from runbook_engine.runtime.executors import (
    CommandExecutor,
    DryRunCollector,
    DryRunExecutor,
    EvidenceCollector,
    RecordingExecutor,
    SubmittedEvidenceCollector,
    SubprocessExecutor,
    ToolExecutor,
)
from runbook_engine.runtime.expressions import JinjaEvaluator
from runbook_engine.runtime.invoke import InvokeStack, Level
from runbook_engine.runtime.replay import (
    ReplayExecutor,
    Scenario,
    ScenarioCollector,
    TimeRebaser,
    load_scenario,
    parse_reference_time,
    write_scenario,
)
from runbook_engine.runtime.steps import StepRunner
from runbook_engine.session.models import (
    ChildRun,
    EvidenceValue,
    OutcomeRecord,
    RecordedCommand,
    RunState,
    StepResult,
    new_run_id,
    utc_iso_now,
)
from runbook_engine.session.serializer import restore_engine, snapshot_session
from runbook_engine.session.store import SessionStore
from runbook_engine.workflow.index import flatten_steps
from runbook_engine.workflow.loader import load_workflow
from runbook_engine.workflow.model import Workflow

logger = logging.getLogger(__name__)


class StartParams(BaseModel):
    workflow: str
    mode: RunMode | None = None
    vars: dict[str, str] = Field(default_factory=dict)
    actor: str = ""
    scenario_dir: str = ""
    rebase_time: str = ""


class StepSummary(BaseModel):
    id: str
    type: str
    title: str = ""
    has_outcomes: bool = False


class RunSummary(BaseModel):
    run_id: str
    workflow: str
    path: str
    kind: str = ""
    description: str = ""
    mode: str
    status: str
    step_count: int
    steps: list[StepSummary] = Field(default_factory=list)
    resumed: bool = False
    pending_step: str = ""
    history: list[StepResult] = Field(default_factory=list)


class StepsSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0


class RunManifest(BaseModel):
    run_id: str
    workflow: str
    actor: str = ""
    mode: str
    status: str
    started_at: str
    ended_at: str = ""
    outcome: OutcomeRecord | None = None
    inputs_resolved: dict[str, str] = Field(default_factory=dict)
    steps_summary: StepsSummary = Field(default_factory=StepsSummary)
    parent_run_id: str = ""
    child_runs: list[ChildRun] = Field(default_factory=list)
    active_run_id: str = ""
    error: str = ""


def check_inputs(workflow: Workflow, values: dict[str, str]) -> None:
    """Reject supplied inputs that do not match their declared pattern."""

    problems = []
    for name, definition in workflow.meta.inputs.items():
        value = values.get(name)
        if value and definition.pattern and re.fullmatch(definition.pattern, value) is None:
            problems.append(f"input {name!r} does not match pattern {definition.pattern!r}")
    if problems:
        raise WorkflowValidationError("; ".join(problems))


def _build_collaborators(
    *,
    mode: str,
    evidence: dict[str, dict[str, EvidenceValue]],
    scenario: Scenario | None,
    rebase_time: str,
    cwd: Path,
    commands: CommandExecutor | None,
    tools: ToolExecutor | None,
) -> tuple[CommandExecutor, ToolExecutor | None, EvidenceCollector]:
    if mode == "replay":
        assert scenario is not None
        rebaser = None
        if rebase_time:
            reference = parse_reference_time(rebase_time)
            if scenario.reference_time:
                rebaser = TimeRebaser(parse_reference_time(scenario.reference_time), reference)
            else:
                rebaser = TimeRebaser.anchored_to_latest(
                    (c.stdout for c in scenario.commands), reference
                )
        replay = ReplayExecutor(scenario, rebaser=rebaser)
        return commands or replay, tools or replay, ScenarioCollector(scenario.evidence)

    if mode == "dry-run":
        dry = DryRunExecutor()
        return commands or dry, tools or dry, DryRunCollector()

    return commands or SubprocessExecutor(cwd=cwd), tools, SubmittedEvidenceCollector(evidence)


class RunSession:
    """One run, plus everything needed to persist it after each request."""

    def __init__(
        self,
        engine: ContinuationEngine,
        *,
        store: SessionStore,
        recorder: RecordingExecutor,
        events: EventRecorder,
        mode: str,
        actor: str = "",
        cwd: str = "",
        scenario_dir: str = "",
        rebase_time: str = "",
    ) -> None:
        self.engine = engine
        self.store = store
        self.recorder = recorder
        self.events = events
        self.mode = mode
        self.actor = actor
        self.cwd = cwd
        self.scenario_dir = scenario_dir
        self.rebase_time = rebase_time
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Construction

    @classmethod
    def _wire(
        cls,
        *,
        settings: EngineSettings,
        mode: str,
        scenario_dir: str,
        rebase_time: str,
        cwd: Path,
        records: list[RecordedCommand],
        commands: CommandExecutor | None,
        tools: ToolExecutor | None,
    ) -> tuple[StepRunner, RecordingExecutor, dict[str, dict[str, EvidenceValue]], Scenario | None]:
        if mode == "replay" and not scenario_dir:
            raise RunbookError("replay mode requires a scenario directory")
        scenario = load_scenario(scenario_dir) if mode == "replay" else None

        evidence: dict[str, dict[str, EvidenceValue]] = {}
        base_commands, base_tools, collector = _build_collaborators(
            mode=mode,
            evidence=evidence,
            scenario=scenario,
            rebase_time=rebase_time,
            cwd=cwd,
            commands=commands,
            tools=tools,
        )
        if isinstance(base_commands, ReplayExecutor):
            for record in records:
                base_commands.mark_used(record.argv)

        recorder = RecordingExecutor(base_commands, base_tools, records=records)
        runner = StepRunner(
            commands=recorder,
            collector=collector,
            evaluator=JinjaEvaluator(),
            tools=recorder if recorder.has_tools else None,
            mode=mode,
            default_timeout=settings.command_timeout_seconds,
        )
        return runner, recorder, evidence, scenario

    @classmethod
    def start(
        cls,
        params: StartParams,
        *,
        settings: EngineSettings,
        store: SessionStore | None = None,
        commands: CommandExecutor | None = None,
        tools: ToolExecutor | None = None,
    ) -> RunSession:
        path = Path(params.workflow).resolve()
        workflow, index = load_workflow(path)
        mode = params.mode or settings.default_mode
        cwd = Path.cwd()

        runner, recorder, evidence, scenario = cls._wire(
            settings=settings,
            mode=mode,
            scenario_dir=params.scenario_dir,
            rebase_time=params.rebase_time,
            cwd=cwd,
            records=[],
            commands=commands,
            tools=tools,
        )

        values = workflow.initial_vars()
        if scenario is not None:
            values.update(scenario.inputs)
        values.update(params.vars)
        check_inputs(workflow, values)

        state = RunState(
            run_id=new_run_id(),
            workflow_path=str(path),
            workflow_name=workflow.meta.name,
            vars=values,
        )
        events = EventRecorder()
        engine = ContinuationEngine(
            Level.start(workflow, index, path, state),
            runner,
            runner.evaluator,
            stack=InvokeStack(max_depth=settings.max_invoke_depth),
            sink=events,
            evidence=evidence,
        )
        session = cls(
            engine,
            store=store or SessionStore(settings.runs_dir),
            recorder=recorder,
            events=events,
            mode=mode,
            actor=params.actor or os.environ.get("USER", ""),
            cwd=str(cwd),
            scenario_dir=params.scenario_dir,
            rebase_time=params.rebase_time,
        )
        session.persist()
        logger.info(
            "Run started",
            extra={"run_id": state.run_id, "workflow": workflow.meta.name, "mode": mode},
        )
        return session

    @classmethod
    def resume(
        cls,
        run_id: str,
        *,
        settings: EngineSettings,
        store: SessionStore | None = None,
        commands: CommandExecutor | None = None,
        tools: ToolExecutor | None = None,
    ) -> RunSession:
        store = store or SessionStore(settings.runs_dir)
        saved = store.load(run_id)

        runner, recorder, evidence, _ = cls._wire(
            settings=settings,
            mode=saved.mode,
            scenario_dir=saved.scenario_dir,
            rebase_time=saved.rebase_time,
            cwd=Path(saved.cwd) if saved.cwd else Path.cwd(),
            records=list(saved.commands),
            commands=commands,
            tools=tools,
        )
        events = EventRecorder()
        engine = restore_engine(
            saved,
            runner=runner,
            evaluator=runner.evaluator,
            sink=events,
            evidence=evidence,
            max_invoke_depth=settings.max_invoke_depth,
        )
        logger.info("Run resumed", extra={"run_id": run_id, "status": saved.status})
        return cls(
            engine,
            store=store,
            recorder=recorder,
            events=events,
            mode=saved.mode,
            actor=saved.actor,
            cwd=saved.cwd,
            scenario_dir=saved.scenario_dir,
            rebase_time=saved.rebase_time,
        )

    # ------------------------------------------------------------------
    # Handlers

    @property
    def run_id(self) -> str:
        return self.engine.root.state.run_id

    def persist(self) -> Path:
        with self._lock:
            session = snapshot_session(
                self.engine,
                mode=self.mode,
                actor=self.actor,
                cwd=self.cwd,
                scenario_dir=self.scenario_dir,
                rebase_time=self.rebase_time,
                commands=self.recorder.records,
            )
            return self.store.save(session)

    def summary(self, *, resumed: bool = False) -> RunSummary:
        with self._lock:
            root = self.engine.root
            steps = flatten_steps(root.workflow.tree)
            pending = self.engine.pending_user
            return RunSummary(
                run_id=root.state.run_id,
                workflow=root.name,
                path=str(root.path),
                kind=root.workflow.meta.kind or "",
                description=root.workflow.meta.description,
                mode=self.mode,
                status=self.engine.status,
                step_count=len(steps),
                steps=[
                    StepSummary(
                        id=s.id, type=s.type, title=s.title, has_outcomes=bool(s.outcomes)
                    )
                    for s in steps
                ],
                resumed=resumed,
                pending_step=pending.step_id if pending is not None else "",
                history=list(root.state.history) if resumed else [],
            )

    def advance(self) -> AdvanceResult:
        with self._lock:
            try:
                return self.engine.advance()
            finally:
                self.persist()

    def choose_outcome(self, *, state: str | None = None, index: int | None = None) -> AdvanceResult:
        with self._lock:
            try:
                return self.engine.choose_outcome(state=state, index=index)
            finally:
                self.persist()

    def submit_choice(self, variable: str, value: str) -> dict[str, Any]:
        with self._lock:
            self.engine.submit_choice(variable, value)
            self.persist()
            return self.engine.variables()

    def submit_evidence(self, step_id: str, evidence: dict[str, EvidenceValue]) -> str:
        with self._lock:
            target = self.engine.submit_evidence(step_id, evidence)
            self.persist()
            return target

    def get_variables(self) -> dict[str, Any]:
        with self._lock:
            return self.engine.variables()

    def get_manifest(self) -> RunManifest:
        with self._lock:
            root = self.engine.root
            counts = StepsSummary(total=len(root.state.history))
            for result in root.state.history:
                setattr(counts, result.status, getattr(counts, result.status) + 1)
            finished = self.engine.status in {"outcome", "completed", "failed"}
            return RunManifest(
                run_id=root.state.run_id,
                workflow=root.name,
                actor=self.actor,
                mode=self.mode,
                status=self.engine.status,
                started_at=root.state.started_at,
                ended_at=utc_iso_now() if finished else "",
                outcome=root.state.outcome,
                inputs_resolved=dict(root.state.vars),
                steps_summary=counts,
                parent_run_id=root.state.parent_run_id,
                child_runs=list(root.state.child_runs),
                active_run_id=self.engine.level.state.run_id,
                error=self.engine.error,
            )

    def save_scenario(self, directory: str | Path) -> Path:
        with self._lock:
            written = write_scenario(
                directory,
                inputs=self.engine.root.state.vars,
                commands=self.recorder.records,
                evidence=self.engine.evidence_log,
            )
            logger.info("Scenario saved", extra={"run_id": self.run_id, "path": str(written)})
            return written

    def cancel(self) -> AdvanceResult | None:
        """Cancel the run.

        A request that is running a step is interrupted and fails the run
        itself, so ``None`` is returned. Otherwise the run is failed here.
        """

        self.engine.runner.cancel.set()
        if not self._lock.acquire(blocking=False):
            logger.info("Cancelling running step", extra={"run_id": self.run_id})
            return None
        try:
            try:
                return self.engine.cancel()
            finally:
                self.persist()
        finally:
            self._lock.release()

    def drain_events(self) -> list[EngineEvent]:
        return self.events.drain()


class RunRegistry:
    """Live sessions by run id, resumed from disk on first use."""

    def __init__(
        self,
        settings: EngineSettings,
        *,
        commands: CommandExecutor | None = None,
        tools: ToolExecutor | None = None,
    ) -> None:
        self.settings = settings
        self.store = SessionStore(settings.runs_dir)
        self._commands = commands
        self._tools = tools
        self._sessions: dict[str, RunSession] = {}
        self._lock = threading.Lock()

    def start(self, params: StartParams) -> RunSession:
        session = RunSession.start(
            params,
            settings=self.settings,
            store=self.store,
            commands=self._commands,
            tools=self._tools,
        )
        with self._lock:
            self._sessions[session.run_id] = session
        return session

    def resume(self, run_id: str) -> RunSession:
        """Return the live session for ``run_id``, loading it from disk if needed.

        One process holds at most one session per run, so concurrent requests
        never work on separate copies of the same continuation.
        """

        with self._lock:
            session = self._sessions.get(run_id)
            if session is None:
                session = RunSession.resume(
                    run_id,
                    settings=self.settings,
                    store=self.store,
                    commands=self._commands,
                    tools=self._tools,
                )
                self._sessions[run_id] = session
            return session

    def get(self, run_id: str) -> RunSession:
        return self.resume(run_id)
