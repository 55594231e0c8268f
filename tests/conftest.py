"""Test configuration and fixtures."""

from __future__ import annotations

import textwrap
import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from runbook_engine.config import EngineSettings
from runbook_engine.runtime.engine import AdvanceResult, ContinuationEngine
from runbook_engine.runtime.events import EventRecorder
from runbook_engine.runtime.executors import (
    CommandResult,
    DryRunCollector,
    EvidenceCollector,
    SubmittedEvidenceCollector,
)
from runbook_engine.runtime.expressions import JinjaEvaluator
from runbook_engine.runtime.invoke import InvokeStack, Level
from runbook_engine.runtime.steps import StepRunner
from runbook_engine.session.models import EvidenceValue, RunState
from runbook_engine.workflow.loader import load_workflow


class ScriptedExecutor:
    """Answers commands from a script keyed by the joined argv.

    Each key maps to a list of ``(stdout, exit_code)`` responses consumed in
    order; the last one repeats. Unknown commands succeed with empty output.
    """

    def __init__(self, script: Mapping[str, Sequence[tuple[str, int]]] | None = None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[list[str]] = []
        self.tool_calls: list[tuple[str, str, dict[str, str]]] = []

    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        self.calls.append(list(argv))
        responses = self.script.get(" ".join(argv))
        if not responses:
            return CommandResult()
        stdout, exit_code = responses.pop(0) if len(responses) > 1 else responses[0]
        return CommandResult(stdout=stdout, exit_code=exit_code)

    def run_tool_action(
        self,
        tool: str,
        action: str,
        args: Mapping[str, str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        self.tool_calls.append((tool, action, dict(args)))
        return CommandResult(stdout=f"{tool}.{action}", captures={"tool_status": "ok"})

    @property
    def commands_run(self) -> list[str]:
        return [" ".join(argv) for argv in self.calls]


@pytest.fixture
def write_workflow(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a workflow document (dedented) under tmp_path and return its path."""

    def _write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip(), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def scripted() -> Callable[..., ScriptedExecutor]:
    """Factory for executors answering from a script (see ScriptedExecutor)."""

    return ScriptedExecutor


@pytest.fixture
def make_engine() -> Callable[..., tuple[ContinuationEngine, EventRecorder]]:
    """Build an engine over a workflow file with in-memory collaborators."""

    def _make(
        path: Path,
        *,
        executor: ScriptedExecutor | None = None,
        collector: EvidenceCollector | None = None,
        evidence: dict[str, dict[str, EvidenceValue]] | None = None,
        mode: str = "real",
        variables: dict[str, str] | None = None,
        max_depth: int = 5,
    ) -> tuple[ContinuationEngine, EventRecorder]:
        workflow, index = load_workflow(path)
        executor = executor or ScriptedExecutor()
        shared = evidence if evidence is not None else {}
        if collector is None:
            collector = DryRunCollector() if mode == "dry-run" else SubmittedEvidenceCollector(shared)
        evaluator = JinjaEvaluator()
        runner = StepRunner(
            commands=executor,
            collector=collector,
            evaluator=evaluator,
            tools=executor,
            mode=mode,
        )
        values = workflow.initial_vars()
        values.update(variables or {})
        state = RunState(
            run_id="run-root",
            workflow_path=str(path.resolve()),
            workflow_name=workflow.meta.name,
            vars=values,
        )
        events = EventRecorder()
        engine = ContinuationEngine(
            Level.start(workflow, index, path.resolve(), state),
            runner,
            evaluator,
            stack=InvokeStack(max_depth=max_depth),
            sink=events,
            evidence=shared,
        )
        return engine, events

    return _make


@pytest.fixture
def drive() -> Callable[[ContinuationEngine], AdvanceResult]:
    """Advance past step results until the run stops for another reason."""

    def _drive(engine: ContinuationEngine) -> AdvanceResult:
        result = engine.advance()
        while result.status == "step_result":
            result = engine.advance()
        return result

    return _drive


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> EngineSettings:
    """Engine settings writing sessions under tmp_path."""

    monkeypatch.setenv("RUNBOOK_RUNS_DIR", str(tmp_path / "runs"))
    monkeypatch.setenv("RUNBOOK_DEFAULT_MODE", "real")
    return EngineSettings(_env_file=None)
