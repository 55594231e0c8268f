"""The continuation engine.

`ContinuationEngine.advance()` pops work from the active level's continuation
and keeps going until it has to stop:

- a manual step needs the operator (``awaiting_user``),
- an outcome is reached (``outcome``),
- a step fails or an iteration does not converge (``failed``),
- the queue is exhausted (``completed``),
- or a root-level step finished (``step_result``), so the caller can show
  progress one step at a time.

Iterate blocks expand lazily: each pass pushes the block's children followed
by a watchpoint that decides, once the pass is done, whether another pass
runs. Invoke steps push an :class:`InvokeFrame` and continue on the child's
queue; the frame is popped when the child's queue empties or it reaches an
outcome.
"""

from __future__ import annotations

import logging
from collections.abc import MutableMapping, Sequence
from typing import Any, Literal

from pydantic import BaseModel, Field

from runbook_engine.errors import (
    EvidenceRequired,
    InvokeDepthExceeded,
    InvokeError,
    IterationDidNotConverge,
    NoPendingStep,
    PendingUserConflict,
    StepCancelled,
    UnknownOutcome,
)
from runbook_engine.runtime import events as ev
from runbook_engine.runtime.continuation import (
    ConvergenceWatchpoint,
    IterateRef,
    ListWatchpoint,
    StepRef,
)
from runbook_engine.runtime.events import EngineEvent, EventRecorder, EventSink
from runbook_engine.runtime.expressions import Evaluator, ExpressionError, check, render_or_raw
from runbook_engine.runtime.invoke import InvokeStack, Level
from runbook_engine.runtime.outcomes import (
    find_outcome,
    record_outcome,
    select_branch,
    select_outcome,
)
from runbook_engine.runtime.steps import StepRunner
from runbook_engine.session.models import (
    ChildRun,
    EvidenceValue,
    OutcomeRecord,
    RunStatus,
    StepResult,
    utc_iso_now,
)
from runbook_engine.workflow.model import Step, TreeNode

logger = logging.getLogger(__name__)

AdvanceStatus = Literal["awaiting_user", "outcome", "completed", "failed", "step_result"]

_TERMINAL: frozenset[str] = frozenset({"outcome", "completed", "failed"})


class OutcomeOption(BaseModel):
    index: int
    state: str
    when: str = ""
    recommendation: str = ""


class ChoiceOptionView(BaseModel):
    value: str
    label: str = ""
    description: str = ""


class ChoicePrompt(BaseModel):
    variable: str
    prompt: str = ""
    options: list[ChoiceOptionView] = Field(default_factory=list)


class AdvanceResult(BaseModel):
    """What the caller learns from one call into the engine."""

    status: AdvanceStatus
    run_id: str
    step_id: str = ""
    title: str = ""
    step_type: str = ""
    instructions: str = ""
    step_status: str = ""
    captures: dict[str, str] = Field(default_factory=dict)
    outcomes: list[OutcomeOption] = Field(default_factory=list)
    choices: ChoicePrompt | None = None
    required_evidence: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)
    outcome: OutcomeRecord | None = None
    error: str = ""
    invoke_depth: int = 0


def is_routing_step(node: TreeNode) -> bool:
    """A manual step that only routes: no operator input, and either branches
    without outcomes or a single unconditional outcome."""

    step = node.step
    if step is None or step.type != "manual" or step.needs_input:
        return False
    if not step.outcomes:
        return bool(node.branches)
    return len(step.outcomes) == 1 and not step.outcomes[0].when.strip()


class ContinuationEngine:
    def __init__(
        self,
        level: Level,
        runner: StepRunner,
        evaluator: Evaluator,
        *,
        stack: InvokeStack | None = None,
        sink: EventSink | None = None,
        evidence: MutableMapping[str, dict[str, EvidenceValue]] | None = None,
        evidence_log: dict[str, dict[str, EvidenceValue]] | None = None,
        pending_user: StepRef | None = None,
        status: RunStatus = "running",
        error: str = "",
    ) -> None:
        self.level = level
        self.runner = runner
        self.evaluator = evaluator
        self.stack = stack if stack is not None else InvokeStack()
        self.sink: EventSink = sink if sink is not None else EventRecorder()
        self.evidence = evidence if evidence is not None else {}
        # Every submission, kept after the step consumed it; written to scenarios.
        self.evidence_log = evidence_log if evidence_log is not None else {}
        self.pending_user = pending_user
        self.status: RunStatus = status
        self.error = error

    # ------------------------------------------------------------------
    # Public operations

    @property
    def root(self) -> Level:
        return self.stack.root(self.level)

    def advance(self) -> AdvanceResult:
        if self.status in _TERMINAL:
            return self._terminal_result()

        if self.pending_user is not None:
            ref = self.pending_user
            step = self.level.index.step(ref.step_id)
            self.pending_user = None
            self.status = "running"
            try:
                result = self._execute(step)
            except EvidenceRequired as e:
                return self._await(ref, step, missing=e.missing)
            except StepCancelled as e:
                return self._fail(step.id, str(e), fatal=True)
            stop = self._settle(ref, step, result)
            if stop is not None:
                return stop

        return self._drive()

    def choose_outcome(self, *, state: str | None = None, index: int | None = None) -> AdvanceResult:
        """Resolve the pending step with an outcome picked by the operator."""

        if self.pending_user is None:
            raise NoPendingStep("no step is awaiting the user")
        ref = self.pending_user
        step = self.level.index.step(ref.step_id)
        outcome = find_outcome(step, state=state, index=index)
        if outcome is None:
            raise UnknownOutcome(
                f"step {step.id!r} has no outcome "
                + (f"at index {index}" if index is not None else f"with state {state!r}")
            )

        self.pending_user = None
        self.status = "running"
        try:
            self._execute(step)
        except EvidenceRequired as e:
            return self._await(ref, step, missing=e.missing)
        except StepCancelled as e:
            return self._fail(step.id, str(e), fatal=True)

        record = record_outcome(step, outcome, self.level.state.env(), self.evaluator)
        stop = self._reach(record)
        if stop is not None:
            return stop
        return self._drive()

    def cancel(self, reason: str = "run cancelled") -> AdvanceResult:
        """Fail the run between steps. History is kept; no outcome is recorded."""

        if self.status in _TERMINAL:
            return self._terminal_result()
        step_id = self.pending_user.step_id if self.pending_user is not None else ""
        self.pending_user = None
        result = self._fail(step_id, reason, fatal=True)
        assert result is not None
        return result

    def submit_choice(self, variable: str, value: str) -> None:
        """Set a variable; a pending choice step on that variable takes it as its answer."""

        self.level.state.set_var(variable, value)
        if self.pending_user is not None:
            step = self.level.index.step(self.pending_user.step_id)
            if step.choices is not None and step.choices.variable == variable:
                self.evidence.setdefault(step.id, {})[variable] = EvidenceValue(
                    kind="text", value=value
                )
        logger.info(
            "Choice submitted",
            extra={"run_id": self.level.state.run_id, "variable": variable},
        )

    def submit_evidence(self, step_id: str, evidence: dict[str, EvidenceValue]) -> str:
        """Store operator evidence for a step; defaults to the pending step."""

        if not step_id:
            if self.pending_user is None:
                raise NoPendingStep("no step is awaiting evidence")
            step_id = self.pending_user.step_id
        self.evidence.setdefault(step_id, {}).update(evidence)
        self.evidence_log.setdefault(step_id, {}).update(evidence)
        logger.info(
            "Evidence submitted",
            extra={"run_id": self.level.state.run_id, "step_id": step_id, "names": sorted(evidence)},
        )
        return step_id

    def variables(self) -> dict[str, Any]:
        state = self.level.state
        return {"vars": dict(state.vars), "captures": dict(state.captures)}

    # ------------------------------------------------------------------
    # Auto-advance loop

    def _drive(self) -> AdvanceResult:
        while True:
            level = self.level
            cont = level.continuation

            if not cont.has_next():
                if self.stack:
                    stop = self._exit_invoke()
                    if stop is not None:
                        return stop
                    continue
                return self._complete()

            node = cont.pop()
            if isinstance(node, ConvergenceWatchpoint):
                stop = self._on_convergence(node)
            elif isinstance(node, ListWatchpoint):
                stop = self._on_list(node)
            elif isinstance(node, IterateRef):
                stop = self._on_iterate(node)
            else:
                stop = self._on_step(node)
            if stop is not None:
                return stop

    def _on_step(self, ref: StepRef) -> AdvanceResult | None:
        level = self.level
        tree_node = level.index.node(ref.step_id)
        step = level.index.step(ref.step_id)

        try:
            skip = self.runner.precondition_met(step, level.state)
        except StepCancelled as e:
            return self._fail(step.id, str(e), fatal=True)
        if skip:
            self._record_skip(step, step.precondition.message if step.precondition else "")
            return None

        if step.type == "manual" and not is_routing_step(tree_node) and not step.required_evidence:
            return self._await(ref, step)

        if step.type == "invoke":
            return self._enter_invoke(step)

        depth_before = len(self.stack)
        self._emit(ev.STEP_STARTED, step_id=step.id, step_type=step.type, title=step.label)
        try:
            result = self._execute(step)
        except EvidenceRequired as e:
            return self._await(ref, step, missing=e.missing)
        except StepCancelled as e:
            return self._fail(step.id, str(e), fatal=True)

        stop = self._settle(ref, step, result)
        if stop is not None:
            return stop
        if not self.stack and depth_before == 0 and not is_routing_step(tree_node):
            return self._step_result(step, result)
        return None

    def _execute(self, step: Step) -> StepResult:
        level = self.level
        result = self.runner.run(
            step,
            level.state,
            step_index=level.continuation.step_index,
            workflow_timeout=level.default_timeout,
        )
        level.state.history.append(result)
        level.state.captures.update(result.captures)
        if step.type == "manual":
            self.evidence.pop(step.id, None)
        if step.choices is not None and step.choices.variable in result.captures:
            level.state.vars[step.choices.variable] = result.captures[step.choices.variable]
        level.continuation.step_index += 1
        self._emit(
            ev.STEP_COMPLETED,
            step_id=step.id,
            status=result.status,
            captures=dict(result.captures),
            error=result.error,
        )
        return result

    def _settle(self, ref: StepRef, step: Step, result: StepResult) -> AdvanceResult | None:
        """Apply outcomes, failure handling and branches after a step ran."""

        level = self.level
        env = level.state.env()
        outcome = select_outcome(step, result, env, self.evaluator)
        if outcome is not None:
            return self._reach(record_outcome(step, outcome, env, self.evaluator))

        if result.status == "failed":
            return self._fail(step.id, result.error or f"step {step.id!r} failed")

        branch = select_branch(level.index.node(step.id), env, self.evaluator)
        if branch is not None:
            logger.debug(
                "Branch taken",
                extra={"step_id": step.id, "branch": branch.label or branch.condition},
            )
            level.continuation.push_front(branch.steps, ref.depth + 1)
        return None

    # ------------------------------------------------------------------
    # Iteration

    def _on_iterate(self, ref: IterateRef) -> AdvanceResult | None:
        level = self.level
        block = level.index.iterate(ref.key)

        if not block.is_list:
            assert block.max is not None
            self._emit(ev.ITERATION_STARTED, key=ref.key, mode="convergence", max=block.max)
            level.state.vars["iteration"] = "0"
            level.continuation.push_convergence_pass(ref.key, 0, block.max, ref.depth)
            return None

        try:
            rendered = self.evaluator.render(block.over, level.state.env())
        except ExpressionError as e:
            self._emit(ev.ITERATION_FAILED, key=ref.key, error=str(e))
            return self._fail(ref.key, f"iterate {ref.key!r}: cannot resolve 'over': {e}")

        items = [item.strip() for item in rendered.split(",") if item.strip()]
        self._emit(ev.ITERATION_STARTED, key=ref.key, mode="list", items=items)
        if not items:
            self._emit(ev.ITERATION_CONVERGED, key=ref.key, passes=0)
            return None

        level.state.vars["iteration"] = "0"
        level.state.vars[block.loop_var] = items[0]
        level.continuation.push_list_pass(ref.key, items, 0, block.loop_var, ref.depth)
        return None

    def _on_convergence(self, wp: ConvergenceWatchpoint) -> AdvanceResult | None:
        level = self.level
        block = level.index.iterate(wp.key)

        if check(self.evaluator, block.until, level.state.env(), key=wp.key):
            self._emit(ev.ITERATION_CONVERGED, key=wp.key, passes=wp.pass_index + 1)
            return None

        next_pass = wp.pass_index + 1
        if next_pass >= wp.max_passes:
            error = IterationDidNotConverge(wp.key, wp.max_passes, block.until)
            self._emit(ev.ITERATION_FAILED, key=wp.key, passes=wp.max_passes, error=str(error))
            return self._fail(wp.key, str(error))

        level.state.vars["iteration"] = str(next_pass)
        level.continuation.push_convergence_pass(wp.key, next_pass, wp.max_passes, wp.depth)
        self._emit(ev.ITERATION_PASS, key=wp.key, iteration=next_pass)
        return None

    def _on_list(self, wp: ListWatchpoint) -> AdvanceResult | None:
        level = self.level
        next_index = wp.index + 1
        if next_index >= len(wp.items):
            self._emit(ev.ITERATION_CONVERGED, key=wp.key, passes=len(wp.items))
            return None

        level.state.vars["iteration"] = str(next_index)
        level.state.vars[wp.loop_var] = wp.items[next_index]
        level.continuation.push_list_pass(wp.key, wp.items, next_index, wp.loop_var, wp.depth)
        self._emit(ev.ITERATION_PASS, key=wp.key, iteration=next_index, item=wp.items[next_index])
        return None

    # ------------------------------------------------------------------
    # Invoke

    def _enter_invoke(self, step: Step) -> AdvanceResult | None:
        self._emit(ev.STEP_STARTED, step_id=step.id, step_type=step.type, title=step.label)
        try:
            frame, child = self.stack.open_child(self.level, step, self.evaluator)
        except InvokeDepthExceeded as e:
            self._record_failure(step, str(e))
            return self._fail(step.id, str(e), fatal=True)
        except InvokeError as e:
            self._record_failure(step, str(e))
            return self._fail(step.id, str(e))

        self.stack.push(frame)
        self.level = child
        self._emit(
            ev.INVOKE_STARTED,
            step_id=step.id,
            parent_run_id=frame.parent.state.run_id,
            workflow=child.name,
            path=str(child.path),
            depth=child.state.chain_depth,
        )
        return None

    def _exit_invoke(self) -> AdvanceResult | None:
        frame = self.stack.pop()
        child = self.level
        parent = frame.parent
        child_outcome = child.state.outcome

        parent.state.child_runs.append(
            ChildRun(
                run_id=child.state.run_id,
                workflow=child.name,
                outcome=child_outcome.state if child_outcome else "",
            )
        )

        mapped: dict[str, str] = {}
        for parent_key, child_key in frame.capture.items():
            if child_key in child.state.captures:
                value = child.state.captures[child_key]
            elif child_key in child.state.vars:
                value = child.state.vars[child_key]
            else:
                continue
            parent.state.set_var(parent_key, value)
            mapped[parent_key] = value

        parent.state.history.append(
            StepResult(
                run_id=parent.state.run_id,
                step_id=frame.invoke_step_id,
                step_index=parent.continuation.step_index,
                status="passed",
                started_at=frame.invoked_at or utc_iso_now(),
                ended_at=utc_iso_now(),
                captures=mapped,
            )
        )
        parent.continuation.step_index += 1
        self.level = parent
        self._emit(
            ev.INVOKE_COMPLETED,
            step_id=frame.invoke_step_id,
            child_run_id=child.state.run_id,
            workflow=child.name,
            outcome=child_outcome.state if child_outcome else "",
            captures=mapped,
        )

        if child_outcome is not None and frame.stops_on(child_outcome.state):
            logger.info(
                "Gate stopped parent workflow",
                extra={"run_id": parent.state.run_id, "step_id": frame.invoke_step_id},
            )
            record = OutcomeRecord(
                state=child_outcome.state,
                step_id=frame.invoke_step_id,
                recommendation=child_outcome.recommendation,
                gate_triggered=True,
                next_workflow=child_outcome.next_workflow,
            )
            return self._reach(record)
        return None

    # ------------------------------------------------------------------
    # Terminal transitions

    def _reach(self, record: OutcomeRecord) -> AdvanceResult | None:
        """Record an outcome on the active level and stop its queue.

        Inside an invoke the level then exits through the frame on the next
        loop iteration, so ``None`` is returned.
        """

        level = self.level
        level.state.outcome = record
        level.continuation.clear()
        logger.info(
            "Outcome reached",
            extra={"run_id": level.state.run_id, "step_id": record.step_id, "state": record.state},
        )
        if self.stack:
            return None

        self._emit(
            ev.OUTCOME_REACHED,
            step_id=record.step_id,
            state=record.state,
            recommendation=record.recommendation,
            gate_triggered=record.gate_triggered,
        )
        self._emit_skipped(level)
        self.status = "outcome"
        self._emit(ev.RUN_COMPLETED, status=self.status, outcome=record.state)
        return AdvanceResult(
            status="outcome",
            run_id=level.state.run_id,
            step_id=record.step_id,
            outcome=record,
        )

    def _complete(self) -> AdvanceResult:
        level = self.level
        self._emit_skipped(level)
        self.status = "completed"
        outcome = level.state.outcome
        self._emit(ev.RUN_COMPLETED, status=self.status, outcome=outcome.state if outcome else "")
        return AdvanceResult(status="completed", run_id=level.state.run_id, outcome=outcome)

    def _fail(self, step_id: str, error: str, *, fatal: bool = False) -> AdvanceResult | None:
        """Halt the active level and propagate the failure up the invoke stack.

        A suspended parent whose invoke step has ``gate.on_error: skip`` records
        that step as skipped and resumes (returns ``None``) unless the failure
        is fatal.
        """

        while True:
            level = self.level
            level.continuation.clear()

            if not self.stack:
                self.status = "failed"
                self.error = error
                logger.warning(
                    "Run failed",
                    extra={"run_id": level.state.run_id, "step_id": step_id, "error": error},
                )
                self._emit(ev.RUN_FAILED, step_id=step_id, error=error)
                return AdvanceResult(
                    status="failed", run_id=level.state.run_id, step_id=step_id, error=error
                )

            frame = self.stack.pop()
            parent = frame.parent
            parent.state.child_runs.append(
                ChildRun(run_id=level.state.run_id, workflow=level.name, status="failed")
            )
            self.level = parent
            self._emit(
                ev.INVOKE_COMPLETED,
                step_id=frame.invoke_step_id,
                child_run_id=level.state.run_id,
                workflow=level.name,
                status="failed",
                error=error,
            )

            skip = frame.skips_errors and not fatal
            parent.state.history.append(
                StepResult(
                    run_id=parent.state.run_id,
                    step_id=frame.invoke_step_id,
                    step_index=parent.continuation.step_index,
                    status="skipped" if skip else "failed",
                    started_at=frame.invoked_at or utc_iso_now(),
                    ended_at=utc_iso_now(),
                    error=error,
                )
            )
            parent.continuation.step_index += 1
            if skip:
                self._emit(
                    ev.STEP_SKIPPED,
                    step_id=frame.invoke_step_id,
                    reason=f"invoked workflow failed: {error}",
                )
                return None

            step_id = frame.invoke_step_id
            error = f"invoked workflow {level.name!r} failed: {error}"

    def _await(self, ref: StepRef, step: Step, *, missing: Sequence[str] = ()) -> AdvanceResult:
        if self.pending_user is not None:
            raise PendingUserConflict(
                f"step {self.pending_user.step_id!r} is already awaiting the user"
            )
        self.pending_user = ref
        self.status = "awaiting_user"
        self._emit(ev.INPUT_REQUIRED, step_id=step.id, missing=list(missing))
        return self._describe("awaiting_user", step, missing=missing)

    # ------------------------------------------------------------------
    # Helpers

    def _record_skip(self, step: Step, reason: str) -> None:
        level = self.level
        now = utc_iso_now()
        level.state.history.append(
            StepResult(
                run_id=level.state.run_id,
                step_id=step.id,
                step_index=level.continuation.step_index,
                status="skipped",
                started_at=now,
                ended_at=now,
            )
        )
        level.continuation.step_index += 1
        self._emit(ev.STEP_SKIPPED, step_id=step.id, reason=reason or "precondition satisfied")

    def _record_failure(self, step: Step, error: str) -> None:
        level = self.level
        now = utc_iso_now()
        level.state.history.append(
            StepResult(
                run_id=level.state.run_id,
                step_id=step.id,
                step_index=level.continuation.step_index,
                status="failed",
                started_at=now,
                ended_at=now,
                error=error,
            )
        )
        level.continuation.step_index += 1
        self._emit(ev.STEP_COMPLETED, step_id=step.id, status="failed", captures={}, error=error)

    def _emit_skipped(self, level: Level) -> None:
        executed = level.state.executed_step_ids()
        for step_id in level.index.order:
            if step_id not in executed:
                self._emit(ev.STEP_SKIPPED, step_id=step_id, reason="not reached")

    def _emit(self, event_type: str, **payload: object) -> None:
        payload.setdefault("run_id", self.level.state.run_id)
        self.sink.emit(EngineEvent(type=event_type, payload=dict(payload)))

    def _step_result(self, step: Step, result: StepResult) -> AdvanceResult:
        view = self._describe("step_result", step)
        return view.model_copy(
            update={
                "step_status": result.status,
                "captures": dict(result.captures),
                "error": result.error,
            }
        )

    def _describe(
        self, status: AdvanceStatus, step: Step, *, missing: Sequence[str] = ()
    ) -> AdvanceResult:
        env = self.level.state.env()
        choices = None
        if step.choices is not None:
            choices = ChoicePrompt(
                variable=step.choices.variable,
                prompt=step.choices.prompt,
                options=[
                    ChoiceOptionView(value=o.value, label=o.label, description=o.description)
                    for o in step.choices.options
                ],
            )
        return AdvanceResult(
            status=status,
            run_id=self.level.state.run_id,
            step_id=step.id,
            title=step.label,
            step_type=step.type,
            instructions=render_or_raw(self.evaluator, step.instructions, env),
            outcomes=[
                OutcomeOption(
                    index=i,
                    state=o.state,
                    when=o.when,
                    recommendation=render_or_raw(self.evaluator, o.recommendation, env),
                )
                for i, o in enumerate(step.outcomes)
            ],
            choices=choices,
            required_evidence=[req.name for req in step.required_evidence],
            missing=list(missing),
            invoke_depth=len(self.stack),
        )

    def _terminal_result(self) -> AdvanceResult:
        root = self.root
        return AdvanceResult(
            status=self.status,  # type: ignore[arg-type]
            run_id=root.state.run_id,
            outcome=root.state.outcome,
            error=self.error,
        )
