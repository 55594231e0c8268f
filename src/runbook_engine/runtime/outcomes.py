"""Outcome and branch selection after a step has executed."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from runbook_engine.runtime.expressions import Evaluator, ExpressionError, check, render_or_raw
from runbook_engine.session.models import NextWorkflowRef, OutcomeRecord, StepResult
from runbook_engine.workflow.model import Branch, Outcome, Step, TreeNode

logger = logging.getLogger(__name__)


def select_outcome(
    step: Step, result: StepResult, env: Mapping[str, Any], evaluator: Evaluator
) -> Outcome | None:
    """First outcome whose ``when`` holds, in declaration order.

    Outcomes are considered when the step passed, and also when it failed but
    still produced captures.
    """

    if not step.outcomes:
        return None
    if result.status != "passed":
        if not result.captures:
            return None
        logger.warning(
            "Evaluating outcomes of a failed step that produced captures",
            extra={"step_id": step.id, "error": result.error},
        )
    for outcome in step.outcomes:
        if check(evaluator, outcome.when, env, step_id=step.id):
            return outcome
    return None


def select_branch(node: TreeNode, env: Mapping[str, Any], evaluator: Evaluator) -> Branch | None:
    for branch in node.branches:
        if check(evaluator, branch.condition, env, branch=branch.label or branch.condition):
            return branch
    return None


def find_outcome(step: Step, *, state: str | None = None, index: int | None = None) -> Outcome | None:
    """Outcome chosen by the operator: by position when given, else by state."""

    if index is not None:
        if 0 <= index < len(step.outcomes):
            return step.outcomes[index]
        return None
    for outcome in step.outcomes:
        if outcome.state == state:
            return outcome
    return None


def record_outcome(
    step: Step, outcome: Outcome, env: Mapping[str, Any], evaluator: Evaluator
) -> OutcomeRecord:
    next_workflow = None
    if outcome.next_workflow is not None:
        inputs = {}
        for name, template in outcome.next_workflow.inputs.items():
            try:
                inputs[name] = evaluator.render(template, env)
            except ExpressionError:
                inputs[name] = template
        next_workflow = NextWorkflowRef(file=outcome.next_workflow.file, inputs=inputs)

    return OutcomeRecord(
        state=outcome.state,
        step_id=step.id,
        recommendation=render_or_raw(evaluator, outcome.recommendation, env),
        next_workflow=next_workflow,
    )
