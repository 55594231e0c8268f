"""Nested workflow invocation.

An invoke step suspends the current level (its run state and continuation)
in an :class:`InvokeFrame` and makes the child workflow the active level.
When the child finishes, the frame is popped and the parent resumes exactly
where it stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from runbook_engine.config import MAX_INVOKE_DEPTH
from runbook_engine.errors import InvokeDepthExceeded, InvokeError, WorkflowValidationError
from runbook_engine.runtime.continuation import Continuation
from runbook_engine.runtime.expressions import Evaluator, ExpressionError
from runbook_engine.session.models import RunState, new_run_id, utc_iso_now
from runbook_engine.workflow.index import TreeIndex
from runbook_engine.workflow.loader import load_workflow, resolve_reference
from runbook_engine.workflow.model import Gate, Step, Workflow

logger = logging.getLogger(__name__)


@dataclass
class Level:
    """One workflow being executed: the root run or an invoked child."""

    workflow: Workflow
    index: TreeIndex
    path: Path
    state: RunState
    continuation: Continuation

    @classmethod
    def start(cls, workflow: Workflow, index: TreeIndex, path: Path, state: RunState) -> Level:
        return cls(
            workflow=workflow,
            index=index,
            path=path,
            state=state,
            continuation=Continuation.from_nodes(index, workflow.tree),
        )

    @property
    def name(self) -> str:
        return self.workflow.meta.name

    @property
    def default_timeout(self) -> str:
        defaults = self.workflow.meta.defaults
        return defaults.timeout if defaults is not None else ""


@dataclass(frozen=True, slots=True)
class InvokeFrame:
    parent: Level
    invoke_step_id: str
    gate: Gate | None = None
    capture: dict[str, str] = field(default_factory=dict)
    invoked_at: str = ""

    def stops_on(self, state: str | None) -> bool:
        return self.gate is not None and state is not None and state in self.gate.stop_if

    @property
    def skips_errors(self) -> bool:
        return self.gate is not None and self.gate.on_error == "skip"


class InvokeStack:
    """LIFO of suspended parent levels, outermost first."""

    def __init__(self, frames: list[InvokeFrame] | None = None, *, max_depth: int = MAX_INVOKE_DEPTH):
        self._frames: list[InvokeFrame] = list(frames or [])
        self.max_depth = max_depth

    def __len__(self) -> int:
        return len(self._frames)

    def __bool__(self) -> bool:
        return bool(self._frames)

    @property
    def frames(self) -> tuple[InvokeFrame, ...]:
        return tuple(self._frames)

    def push(self, frame: InvokeFrame) -> None:
        self._frames.append(frame)

    def pop(self) -> InvokeFrame:
        return self._frames.pop()

    def root(self, active: Level) -> Level:
        """The outermost level, which is ``active`` when nothing is suspended."""

        return self._frames[0].parent if self._frames else active

    def open_child(self, parent: Level, step: Step, evaluator: Evaluator) -> tuple[InvokeFrame, Level]:
        """Resolve, load and seed the child workflow of an invoke step.

        Raises:
            InvokeDepthExceeded: the child would nest deeper than ``max_depth``.
            InvokeError: the reference cannot be rendered, read or validated.
        """

        assert step.invoke is not None
        depth = parent.state.chain_depth + 1
        if depth > self.max_depth:
            raise InvokeDepthExceeded(depth, self.max_depth)

        env = parent.state.env()
        try:
            ref = evaluator.render(step.invoke.workflow, env)
            path = resolve_reference(
                ref, imports=parent.workflow.imports, base_dir=parent.path.parent
            )
            inputs = {k: evaluator.render(v, env) for k, v in step.invoke.inputs.items()}
        except ExpressionError as e:
            raise InvokeError(f"invoke {step.id!r}: {e}") from e

        try:
            workflow, index = load_workflow(path)
        except WorkflowValidationError as e:
            raise InvokeError(f"invoke {step.id!r}: {e}") from e

        child_vars = workflow.initial_vars()
        child_vars.update(inputs)
        state = RunState(
            run_id=new_run_id(),
            workflow_path=str(path.resolve()),
            workflow_name=workflow.meta.name,
            parent_run_id=parent.state.run_id,
            chain_depth=depth,
            vars=child_vars,
        )
        frame = InvokeFrame(
            parent=parent,
            invoke_step_id=step.id,
            gate=step.gate,
            capture=dict(step.capture),
            invoked_at=utc_iso_now(),
        )
        logger.info(
            "Entering invoked workflow",
            extra={
                "run_id": state.run_id,
                "parent_run_id": parent.state.run_id,
                "workflow": workflow.meta.name,
                "depth": depth,
            },
        )
        return frame, Level.start(workflow, index, path.resolve(), state)
