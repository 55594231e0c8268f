from __future__ import annotations

from runbook_engine.runtime.continuation import (
    Continuation,
    ConvergenceWatchpoint,
    IterateRef,
    ListWatchpoint,
    StepRef,
)
from runbook_engine.workflow.index import TreeIndex
from runbook_engine.workflow.loader import parse_workflow, validate_workflow
from runbook_engine.workflow.model import Workflow


def _index() -> tuple[TreeIndex, Workflow]:
    workflow = parse_workflow(
        {
            "apiVersion": "runbook/v1",
            "meta": {"name": "queue"},
            "tree": [
                {"step": {"id": "first", "type": "manual"}},
                {
                    "iterate": {
                        "id": "retry",
                        "max": 3,
                        "until": "healthy",
                        "steps": [
                            {"step": {"id": "restart", "type": "cli", "with": {"argv": ["r"]}}},
                            {"step": {"id": "ping", "type": "cli", "with": {"argv": ["p"]}}},
                        ],
                    }
                },
                {"step": {"id": "last", "type": "manual"}},
            ],
        }
    )
    return validate_workflow(workflow), workflow


def test_from_nodes_references_top_level_nodes_at_depth_zero() -> None:
    index, workflow = _index()

    cont = Continuation.from_nodes(index, workflow.tree)

    assert cont.snapshot() == (
        StepRef("first", 0),
        IterateRef("retry", 0),
        StepRef("last", 0),
    )
    assert len(cont) == 3
    assert cont.step_index == 0


def test_pop_is_fifo_and_has_next_tracks_emptiness() -> None:
    index, workflow = _index()
    cont = Continuation.from_nodes(index, workflow.tree)

    assert cont.pop() == StepRef("first", 0)
    assert cont.pop() == IterateRef("retry", 0)
    assert cont.has_next()
    assert cont.pop() == StepRef("last", 0)
    assert not cont.has_next()


def test_push_front_places_nodes_before_remaining_work() -> None:
    index, workflow = _index()
    cont = Continuation.from_nodes(index, workflow.tree)
    cont.pop()

    block = index.iterate("retry")
    cont.push_front(block.steps, depth=2)

    assert cont.snapshot()[:3] == (
        StepRef("restart", 2),
        StepRef("ping", 2),
        IterateRef("retry", 0),
    )


def test_convergence_pass_pushes_children_then_watchpoint() -> None:
    index, workflow = _index()
    cont = Continuation.from_nodes(index, workflow.tree)
    cont.pop()
    cont.pop()

    cont.push_convergence_pass("retry", pass_index=1, max_passes=3, depth=0)

    assert cont.snapshot() == (
        StepRef("restart", 1),
        StepRef("ping", 1),
        ConvergenceWatchpoint(key="retry", depth=0, pass_index=1, max_passes=3),
        StepRef("last", 0),
    )


def test_list_pass_carries_items_and_position() -> None:
    index, workflow = _index()
    cont = Continuation(index)

    cont.push_list_pass("retry", ["a", "b"], index=0, loop_var="host", depth=1)

    assert cont.snapshot() == (
        StepRef("restart", 2),
        StepRef("ping", 2),
        ListWatchpoint(key="retry", depth=1, items=("a", "b"), index=0, loop_var="host"),
    )


def test_clear_discards_all_pending_work() -> None:
    index, workflow = _index()
    cont = Continuation.from_nodes(index, workflow.tree)

    cont.clear()

    assert not cont.has_next()
    assert cont.snapshot() == ()
