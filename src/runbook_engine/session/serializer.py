"""Convert a live engine to a :class:`SessionState` and back.

Queue entries are stored as identifiers and resolved against a tree index
rebuilt from the workflow file, so a session can be resumed by a different
process. Anything that no longer resolves raises
:class:`~runbook_engine.errors.ResumeError`; entries are never dropped.
"""

from __future__ import annotations

from collections.abc import Iterable, MutableMapping
from pathlib import Path

from runbook_engine.errors import ResumeError, WorkflowValidationError
from runbook_engine.runtime.continuation import (
    Continuation,
    ConvergenceWatchpoint,
    IterateRef,
    ListWatchpoint,
    PendingNode,
    StepRef,
)
from runbook_engine.runtime.engine import ContinuationEngine
from runbook_engine.runtime.events import EventSink
from runbook_engine.runtime.expressions import Evaluator
from runbook_engine.runtime.invoke import InvokeFrame, InvokeStack, Level
from runbook_engine.runtime.steps import StepRunner
from runbook_engine.session.models import (
    EvidenceValue,
    InvokeFrameRef,
    LevelRecord,
    PendingNodeRef,
    RecordedCommand,
    RunState,
    SessionState,
)
from runbook_engine.workflow.index import TreeIndex
from runbook_engine.workflow.loader import load_workflow
from runbook_engine.workflow.model import Gate


def node_to_ref(node: PendingNode) -> PendingNodeRef:
    if isinstance(node, StepRef):
        return PendingNodeRef(kind="step", step_id=node.step_id, depth=node.depth)
    if isinstance(node, IterateRef):
        return PendingNodeRef(kind="iterate", iterate_key=node.key, depth=node.depth)
    if isinstance(node, ConvergenceWatchpoint):
        return PendingNodeRef(
            kind="convergence_wp",
            iterate_key=node.key,
            depth=node.depth,
            pass_index=node.pass_index,
            max=node.max_passes,
        )
    return PendingNodeRef(
        kind="list_wp",
        iterate_key=node.key,
        depth=node.depth,
        items=list(node.items),
        index=node.index,
        as_var=node.loop_var,
    )


def ref_to_node(ref: PendingNodeRef, index: TreeIndex) -> PendingNode:
    if ref.kind == "step":
        if ref.step_id not in index.steps:
            raise ResumeError(f"queued step {ref.step_id!r} no longer exists in the workflow")
        return StepRef(step_id=ref.step_id, depth=ref.depth)

    if ref.iterate_key not in index.iterates:
        raise ResumeError(f"queued iterate block {ref.iterate_key!r} no longer exists in the workflow")
    if ref.kind == "iterate":
        return IterateRef(key=ref.iterate_key, depth=ref.depth)
    if ref.kind == "convergence_wp":
        return ConvergenceWatchpoint(
            key=ref.iterate_key, depth=ref.depth, pass_index=ref.pass_index, max_passes=ref.max
        )
    if ref.kind == "list_wp":
        return ListWatchpoint(
            key=ref.iterate_key,
            depth=ref.depth,
            items=tuple(ref.items),
            index=ref.index,
            loop_var=ref.as_var or "item",
        )
    raise ResumeError(f"unknown queue entry kind: {ref.kind!r}")


def serialize_queue(nodes: Iterable[PendingNode]) -> list[PendingNodeRef]:
    return [node_to_ref(node) for node in nodes]


def deserialize_queue(refs: Iterable[PendingNodeRef], index: TreeIndex) -> list[PendingNode]:
    return [ref_to_node(ref, index) for ref in refs]


def _level_fields(level: Level) -> dict[str, object]:
    fields = level.state.model_dump()
    fields["step_index"] = level.continuation.step_index
    fields["queue"] = serialize_queue(level.continuation.snapshot())
    return fields


def snapshot_session(
    engine: ContinuationEngine,
    *,
    mode: str,
    actor: str = "",
    cwd: str = "",
    scenario_dir: str = "",
    rebase_time: str = "",
    commands: Iterable[RecordedCommand] = (),
) -> SessionState:
    """Capture everything needed to continue ``engine`` in another process."""

    frames = [
        InvokeFrameRef(
            **_level_fields(frame.parent),
            invoke_step_id=frame.invoke_step_id,
            invoked_at=frame.invoked_at,
            gate_stop_if=list(frame.gate.stop_if) if frame.gate else [],
            gate_on_error=(frame.gate.on_error or "") if frame.gate else "",
            capture=dict(frame.capture),
        )
        for frame in engine.stack.frames
    ]
    root = engine.root
    pending = engine.pending_user
    return SessionState(
        **_level_fields(engine.level),
        root_run_id=root.state.run_id,
        root_workflow_path=root.state.workflow_path,
        mode=mode,
        actor=actor,
        cwd=cwd,
        status=engine.status,
        error=engine.error,
        scenario_dir=scenario_dir,
        rebase_time=rebase_time,
        pending_user=node_to_ref(pending) if pending is not None else None,
        invoke_stack=frames,
        evidence={k: dict(v) for k, v in engine.evidence.items()},
        evidence_log={k: dict(v) for k, v in engine.evidence_log.items()},
        commands=list(commands),
    )


def _restore_level(record: LevelRecord) -> Level:
    path = Path(record.workflow_path)
    try:
        workflow, index = load_workflow(path)
    except WorkflowValidationError as e:
        raise ResumeError(f"cannot re-load workflow for run {record.run_id}: {e}") from e

    state = RunState.model_validate(record.model_dump(include=set(RunState.model_fields)))
    continuation = Continuation(
        index, deserialize_queue(record.queue, index), step_index=record.step_index
    )
    return Level(workflow=workflow, index=index, path=path, state=state, continuation=continuation)


def _restore_gate(frame: InvokeFrameRef) -> Gate | None:
    if not frame.gate_stop_if and not frame.gate_on_error:
        return None
    return Gate.model_validate(
        {"stop_if": frame.gate_stop_if, "on_error": frame.gate_on_error or None}
    )


def restore_engine(
    session: SessionState,
    *,
    runner: StepRunner,
    evaluator: Evaluator,
    sink: EventSink | None = None,
    evidence: MutableMapping[str, dict[str, EvidenceValue]] | None = None,
    max_invoke_depth: int | None = None,
) -> ContinuationEngine:
    """Rebuild a live engine from a persisted session.

    ``evidence`` is filled with the session's submitted evidence so the
    caller's collector and the engine share it.
    """

    frames = [
        InvokeFrame(
            parent=_restore_level(ref),
            invoke_step_id=ref.invoke_step_id,
            gate=_restore_gate(ref),
            capture=dict(ref.capture),
            invoked_at=ref.invoked_at,
        )
        for ref in session.invoke_stack
    ]
    active = _restore_level(session)

    pending: StepRef | None = None
    if session.pending_user is not None:
        node = ref_to_node(session.pending_user, active.index)
        if not isinstance(node, StepRef):
            raise ResumeError("only steps can await the user")
        pending = node

    shared = evidence if evidence is not None else {}
    shared.clear()
    shared.update({k: dict(v) for k, v in session.evidence.items()})

    stack = InvokeStack(frames)
    if max_invoke_depth is not None:
        stack.max_depth = max_invoke_depth
    return ContinuationEngine(
        active,
        runner,
        evaluator,
        stack=stack,
        sink=sink,
        evidence=shared,
        evidence_log={k: dict(v) for k, v in session.evidence_log.items()},
        pending_user=pending,
        status=session.status,
        error=session.error,
    )
