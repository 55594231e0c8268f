"""Execution of a single step.

The runner turns a step definition plus the current run state into a
:class:`~runbook_engine.session.models.StepResult`. It never mutates the run
state; the engine records the result. Invoke steps are driven by the engine
itself and never reach the runner.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from runbook_engine.errors import EvidenceRequired, RunbookError, StepCancelled
from runbook_engine.runtime.executors import (
    CommandExecutor,
    CommandResult,
    EvidenceCollector,
    ToolExecutor,
)
from runbook_engine.runtime.expressions import Evaluator, ExpressionError, render_or_raw
from runbook_engine.session.models import (
    AssertionResult,
    EvidenceValue,
    RunState,
    StepResult,
    utc_iso_now,
)
from runbook_engine.workflow.model import Assertion, Step

logger = logging.getLogger(__name__)

_DURATION = re.compile(r"^(\d+)(ms|s|m|h)$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float | None:
    """``"250ms"`` / ``"30s"`` / ``"5m"`` / ``"1h"`` → seconds; empty → None."""

    value = value.strip()
    if not value:
        return None
    match = _DURATION.match(value)
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def evaluate_assertion(assertion: Assertion, output: str, exit_code: int) -> AssertionResult:
    kind = assertion.kind
    if assertion.contains is not None:
        expected = assertion.contains
        passed = expected in output
        message = (
            f"output contains {expected!r}" if passed else f"output does not contain {expected!r}"
        )
    elif assertion.not_contains is not None:
        expected = assertion.not_contains
        passed = expected not in output
        message = (
            f"output does not contain {expected!r}"
            if passed
            else f"output contains {expected!r} (unexpected)"
        )
    elif assertion.matches is not None:
        expected = assertion.matches
        try:
            passed = re.search(expected, output) is not None
            message = f"output {'matches' if passed else 'does not match'} /{expected}/"
        except re.error as e:
            passed = False
            message = f"invalid regex: {e}"
    elif assertion.exit_code is not None:
        expected = str(assertion.exit_code)
        passed = exit_code == assertion.exit_code
        message = f"exit code {exit_code} {'==' if passed else '!='} {expected}"
        output = str(exit_code)
    elif assertion.equals is not None:
        expected = assertion.equals
        passed = output.strip() == expected
        actual = _truncate(output.strip(), 100)
        message = f"output equals {expected!r}" if passed else f"output {actual!r} != {expected!r}"
    else:
        expected = assertion.not_equals or ""
        passed = output.strip() != expected
        message = (
            f"output differs from {expected!r}"
            if passed
            else f"output equals {expected!r} (unexpected)"
        )

    return AssertionResult(
        type=kind, expected=expected, actual=_truncate(output), passed=passed, message=message
    )


@dataclass
class StepRunner:
    commands: CommandExecutor
    collector: EvidenceCollector
    evaluator: Evaluator
    tools: ToolExecutor | None = None
    mode: str = "dry-run"
    default_timeout: float | None = None
    cancel: threading.Event = field(default_factory=threading.Event)

    def precondition_met(self, step: Step, state: RunState) -> bool:
        """True when the step should be skipped because its precondition check succeeded."""

        pre = step.precondition
        if pre is None or not pre.skip_if_succeeds:
            return False
        try:
            argv = [self.evaluator.render(arg, state.env()) for arg in pre.check]
            result = self.commands.run_command(argv, timeout=self.default_timeout, cancel=self.cancel)
        except StepCancelled:
            raise
        except (RunbookError, OSError, LookupError, ValueError) as e:
            logger.warning(
                "Precondition check failed to run; executing step",
                extra={"step_id": step.id, "error": str(e)},
            )
            return False
        return result.exit_code == 0

    def run(
        self,
        step: Step,
        state: RunState,
        *,
        step_index: int,
        workflow_timeout: str = "",
    ) -> StepResult:
        """Execute ``step``.

        Raises:
            EvidenceRequired: a manual step is still waiting for operator input.
            StepCancelled: the run's cancellation signal fired.
        """

        result = StepResult(
            run_id=state.run_id,
            step_id=step.id,
            step_index=step_index,
            status="passed",
            started_at=utc_iso_now(),
        )
        self._delay(step)

        if step.type == "cli":
            self._run_cli(step, state, result, workflow_timeout)
        elif step.type == "tool":
            self._run_tool(step, state, result, workflow_timeout)
        elif step.type == "manual":
            self._run_manual(step, state, result)
        else:
            result.status = "failed"
            result.error = f"step type {step.type!r} cannot be executed directly"

        result.ended_at = utc_iso_now()
        logger.info(
            "Step finished",
            extra={"run_id": state.run_id, "step_id": step.id, "status": result.status},
        )
        return result

    def _delay(self, step: Step) -> None:
        seconds = parse_duration(step.delay)
        if seconds and self.cancel.wait(seconds):
            raise StepCancelled(f"step {step.id!r} cancelled during delay")

    def _timeout(self, step: Step, workflow_timeout: str) -> float | None:
        return parse_duration(step.timeout) or parse_duration(workflow_timeout) or self.default_timeout

    def _execute(
        self, result: StepResult, call: Callable[[], CommandResult]
    ) -> CommandResult | None:
        try:
            return call()
        except (StepCancelled, EvidenceRequired):
            raise
        except (RunbookError, OSError, LookupError, ValueError) as e:
            result.status = "failed"
            result.error = f"execute: {e}"
            return None

    def _run_cli(self, step: Step, state: RunState, result: StepResult, workflow_timeout: str) -> None:
        assert step.with_ is not None
        env = state.env()
        try:
            argv = [self.evaluator.render(arg, env) for arg in step.with_.argv]
        except ExpressionError as e:
            result.status = "failed"
            result.error = f"resolve variables: {e}"
            return

        timeout = self._timeout(step, workflow_timeout)
        output = self._execute(
            result, lambda: self.commands.run_command(argv, timeout=timeout, cancel=self.cancel)
        )
        if output is None:
            return

        self._capture(step, output, result)
        checks_exit = any(a.exit_code is not None for a in step.assertions)
        self._assert(step.assertions, output, result)
        strict = not checks_exit and self.mode != "dry-run"
        if result.status == "passed" and output.exit_code != 0 and strict:
            result.status = "failed"
            result.error = f"command exited with code {output.exit_code}"

    def _run_tool(self, step: Step, state: RunState, result: StepResult, workflow_timeout: str) -> None:
        assert step.tool is not None
        if self.tools is None:
            result.status = "failed"
            result.error = f"no tool executor configured for tool {step.tool.name!r}"
            return

        env = state.env()
        try:
            args = {k: self.evaluator.render(v, env) for k, v in step.tool.args.items()}
        except ExpressionError as e:
            result.status = "failed"
            result.error = f"resolve tool args: {e}"
            return

        tools, tool = self.tools, step.tool
        timeout = self._timeout(step, workflow_timeout)
        output = self._execute(
            result,
            lambda: tools.run_tool_action(
                tool.name, tool.action, args, timeout=timeout, cancel=self.cancel
            ),
        )
        if output is None:
            return

        self._capture(step, output, result)
        self._assert(step.assertions, output, result)
        if output.exit_code != 0:
            result.status = "failed"
            result.error = f"tool exited with code {output.exit_code}"

    def _capture(self, step: Step, output: CommandResult, result: StepResult) -> None:
        for name, source in step.capture.items():
            if source == "stdout":
                result.captures[name] = output.stdout.strip()
            elif source == "stderr":
                result.captures[name] = output.stderr.strip()
            elif source in output.captures:
                result.captures[name] = output.captures[source]

    def _assert(self, assertions: Sequence[Assertion], output: CommandResult, result: StepResult) -> None:
        if self.mode == "dry-run" or not assertions:
            return
        for assertion in assertions:
            result.assertions.append(evaluate_assertion(assertion, output.stdout, output.exit_code))
        if not all(a.passed for a in result.assertions):
            result.status = "failed"
            result.error = "one or more assertions failed"

    def _run_manual(self, step: Step, state: RunState, result: StepResult) -> None:
        result.actor = "human"
        instructions = render_or_raw(self.evaluator, step.instructions, state.env())
        missing: list[str] = []

        for req in step.required_evidence:
            try:
                if req.kind == "text":
                    text = self.collector.prompt_text(step.id, req.name, instructions)
                    result.evidence[req.name] = EvidenceValue(kind="text", value=text)
                elif req.kind == "checklist":
                    items = self.collector.prompt_checklist(step.id, req.name, req.items)
                    result.evidence[req.name] = EvidenceValue(kind="checklist", items=items)
                else:
                    result.evidence[req.name] = self.collector.prompt_attachment(
                        step.id, req.name, instructions
                    )
            except EvidenceRequired as e:
                missing.extend(e.missing)

        if step.approvals is not None and step.approvals.min > 0:
            roles = list(step.approvals.roles) or ["any"]
            try:
                approvals = self.collector.prompt_approval(step.id, roles, step.approvals.min)
                for i, approval in enumerate(approvals):
                    result.evidence[f"approval_{i + 1}"] = EvidenceValue(
                        kind="approval", value=approval.actor, role=approval.role
                    )
            except EvidenceRequired as e:
                missing.extend(e.missing)

        if step.choices is not None:
            choice = self._choice(step, state, missing)
            if choice is not None:
                result.captures[step.choices.variable] = choice

        if missing:
            raise EvidenceRequired(step.id, missing)

    def _choice(self, step: Step, state: RunState, missing: list[str]) -> str | None:
        assert step.choices is not None
        variable = step.choices.variable
        value = ""
        # On a repeated pass the previous answer is stale; only a fresh submission counts.
        if step.id not in state.executed_step_ids():
            value = state.captures.get(variable) or state.vars.get(variable) or ""
        if not value and self.mode == "dry-run":
            value = step.choices.options[0].value
        if not value:
            try:
                value = self.collector.prompt_text(step.id, variable, step.choices.prompt)
            except EvidenceRequired:
                missing.append(variable)
                return None

        if value not in {option.value for option in step.choices.options}:
            logger.warning(
                "Choice value is not one of the declared options",
                extra={"step_id": step.id, "variable": variable, "value": value},
            )
        return value
