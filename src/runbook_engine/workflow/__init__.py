"""Workflow tree model, loader and index."""

from runbook_engine.workflow.index import TreeIndex, collect_step_ids, flatten_steps
from runbook_engine.workflow.loader import load_workflow, normalize_import, resolve_reference
from runbook_engine.workflow.model import IterateBlock, Outcome, Step, TreeNode, Workflow

__all__ = [
    "IterateBlock",
    "Outcome",
    "Step",
    "TreeIndex",
    "TreeNode",
    "Workflow",
    "collect_step_ids",
    "flatten_steps",
    "load_workflow",
    "normalize_import",
    "resolve_reference",
]
