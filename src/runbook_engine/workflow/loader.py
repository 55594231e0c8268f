"""Load and validate workflow files.

Parsing happens in three passes: YAML (``yaml.safe_load``), structural
validation through the pydantic models, then semantic checks that need the
whole tree (unique ids, per-type step requirements). Any failure raises
:class:`~runbook_engine.errors.WorkflowValidationError` before a run is built.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from runbook_engine.errors import WorkflowValidationError
from runbook_engine.workflow.index import TreeIndex, walk
from runbook_engine.workflow.model import Step, Workflow

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIX = ".runbook.yaml"


def normalize_import(ref: str) -> str:
    """Map an import reference to a file name.

    ``foo`` → ``foo.runbook.yaml``, ``foo.runbook`` → ``foo.runbook.yaml``;
    explicit ``.yaml`` / ``.yml`` references are kept as-is.
    """

    ref = ref.strip()
    if ref.endswith((".yaml", ".yml")):
        return ref
    if ref.endswith(".runbook"):
        return ref + ".yaml"
    return ref + WORKFLOW_SUFFIX


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise WorkflowValidationError(f"cannot read workflow: {e}", path=str(path)) from e
    except yaml.YAMLError as e:
        raise WorkflowValidationError(f"invalid YAML: {e}", path=str(path)) from e

    if not isinstance(raw, dict):
        raise WorkflowValidationError("workflow must be a YAML mapping", path=str(path))
    return raw


def _upgrade_flat_steps(raw: dict[str, Any]) -> dict[str, Any]:
    # Older files list steps directly instead of a tree; each becomes a node.
    if "steps" not in raw:
        return raw
    if raw.get("tree"):
        raise ValueError("workflow cannot declare both 'steps' and 'tree'")
    upgraded = {k: v for k, v in raw.items() if k != "steps"}
    upgraded["tree"] = [{"step": step} for step in raw["steps"] or []]
    return upgraded


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location}: {item.get('msg', '')}" if location else item.get("msg", ""))
    return "; ".join(parts)


def _check_step(step: Step, path: str) -> list[str]:
    problems: list[str] = []
    where = f"{path} (step {step.id!r})"
    if step.type == "cli" and step.with_ is None:
        problems.append(f"{where}: cli steps require 'with.argv'")
    if step.type == "tool" and step.tool is None:
        problems.append(f"{where}: tool steps require a 'tool' config")
    if step.type == "invoke" and step.invoke is None:
        problems.append(f"{where}: invoke steps require an 'invoke' config")
    if step.type != "invoke" and step.gate is not None:
        problems.append(f"{where}: 'gate' is only valid on invoke steps")
    if step.type != "manual" and (step.choices or step.required_evidence or step.approvals):
        problems.append(f"{where}: choices, evidence and approvals are only valid on manual steps")
    return problems


def validate_workflow(workflow: Workflow, *, path: str | None = None) -> TreeIndex:
    """Run semantic checks and return the tree index built along the way."""

    index = TreeIndex.build(workflow.tree)

    problems: list[str] = []
    if not workflow.tree:
        problems.append("workflow has no steps")
    for node_path, node in walk(workflow.tree):
        if node.step is not None:
            problems.extend(_check_step(node.step, node_path))
    if problems:
        raise WorkflowValidationError("; ".join(problems), path=path)
    return index


def parse_workflow(raw: dict[str, Any], *, path: str | None = None) -> Workflow:
    try:
        workflow = Workflow.model_validate(_upgrade_flat_steps(raw))
    except ValidationError as e:
        raise WorkflowValidationError(_format_validation_error(e), path=path) from e
    except ValueError as e:
        raise WorkflowValidationError(str(e), path=path) from e

    normalized = {alias: normalize_import(ref) for alias, ref in workflow.imports.items()}
    if normalized != workflow.imports:
        workflow = workflow.model_copy(update={"imports": normalized})
    return workflow


def load_workflow(path: str | Path) -> tuple[Workflow, TreeIndex]:
    """Load a workflow file and return it with its tree index."""

    path = Path(path)
    workflow = parse_workflow(_read_yaml(path), path=str(path))
    try:
        index = validate_workflow(workflow, path=str(path))
    except WorkflowValidationError as e:
        if e.path is None:
            raise WorkflowValidationError(str(e), path=str(path)) from e
        raise

    logger.debug(
        "Loaded workflow",
        extra={"workflow": workflow.meta.name, "path": str(path), "steps": len(index.order)},
    )
    return workflow, index


def resolve_reference(ref: str, *, imports: dict[str, str], base_dir: Path) -> Path:
    """Resolve an invoke reference (import alias or relative path) to a file path."""

    target = imports.get(ref, ref)
    candidate = Path(target)
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return candidate
