from __future__ import annotations

from pathlib import Path

import pytest

from runbook_engine.errors import WorkflowValidationError
from runbook_engine.workflow.index import TreeIndex, collect_step_ids, iterate_key
from runbook_engine.workflow.loader import (
    load_workflow,
    normalize_import,
    parse_workflow,
    resolve_reference,
    validate_workflow,
)
from runbook_engine.workflow.model import Assertion


def _cli(step_id: str, *argv: str) -> dict[str, object]:
    return {"step": {"id": step_id, "type": "cli", "with": {"argv": list(argv or [step_id])}}}


def _raw(*nodes: dict[str, object], **meta: object) -> dict[str, object]:
    return {"apiVersion": "runbook/v1", "meta": {"name": "demo", **meta}, "tree": list(nodes)}


def test_load_workflow_builds_index_in_declaration_order(write_workflow) -> None:
    path = write_workflow(
        "disk.runbook.yaml",
        """
        apiVersion: runbook/v1
        meta:
          name: disk-cleanup
          kind: mitigation
          vars:
            threshold: "90"
        tree:
          - step:
              id: check
              type: cli
              with:
                argv: ["df", "-h"]
              capture:
                usage: stdout
            branches:
              - condition: usage | int > 90
                steps:
                  - step: {id: purge, type: cli, with: {argv: ["purge-logs"]}}
          - step:
              id: confirm
              type: manual
              instructions: Check the dashboard
        """,
    )

    workflow, index = load_workflow(path)

    assert workflow.meta.name == "disk-cleanup"
    assert workflow.meta.kind == "mitigation"
    assert index.order == ("check", "purge", "confirm")
    assert index.step("check").with_ is not None
    assert index.step("check").with_.argv == ("df", "-h")
    assert index.node("check").branches[0].condition == "usage | int > 90"


def test_flat_steps_are_upgraded_to_a_tree() -> None:
    raw = {
        "apiVersion": "runbook/v0",
        "meta": {"name": "legacy"},
        "steps": [
            {"id": "a", "type": "cli", "with": {"argv": ["a"]}},
            {"id": "b", "type": "manual"},
        ],
    }

    workflow = parse_workflow(raw)

    assert collect_step_ids(workflow.tree) == ["a", "b"]


def test_steps_and_tree_together_are_rejected() -> None:
    raw = _raw(_cli("a"))
    raw["steps"] = [{"id": "b", "type": "manual"}]

    with pytest.raises(WorkflowValidationError, match="both 'steps' and 'tree'"):
        parse_workflow(raw)


def test_duplicate_step_ids_are_rejected() -> None:
    workflow = parse_workflow(_raw(_cli("a"), _cli("a")))

    with pytest.raises(WorkflowValidationError, match="duplicate step id 'a'"):
        validate_workflow(workflow)


def test_unknown_fields_are_rejected() -> None:
    raw = _raw({"step": {"id": "a", "type": "cli", "with": {"argv": ["a"]}, "retries": 3}})

    with pytest.raises(WorkflowValidationError, match="retries"):
        parse_workflow(raw)


@pytest.mark.parametrize(
    ("step", "message"),
    [
        ({"id": "a", "type": "cli"}, "cli steps require"),
        ({"id": "a", "type": "tool"}, "tool steps require"),
        ({"id": "a", "type": "invoke"}, "invoke steps require"),
        (
            {"id": "a", "type": "cli", "with": {"argv": ["x"]}, "gate": {"stop_if": ["resolved"]}},
            "only valid on invoke steps",
        ),
        (
            {
                "id": "a",
                "type": "cli",
                "with": {"argv": ["x"]},
                "required_evidence": [{"kind": "text", "name": "ticket"}],
            },
            "only valid on manual steps",
        ),
    ],
)
def test_step_type_requirements(step: dict[str, object], message: str) -> None:
    workflow = parse_workflow(_raw({"step": step}))

    with pytest.raises(WorkflowValidationError, match=message):
        validate_workflow(workflow)


def test_empty_tree_is_rejected() -> None:
    with pytest.raises(WorkflowValidationError, match="no steps"):
        validate_workflow(parse_workflow(_raw()))


def test_convergence_iterate_requires_max_and_until() -> None:
    raw = _raw({"iterate": {"max": 3, "steps": [_cli("a")]}})

    with pytest.raises(WorkflowValidationError, match="requires both 'max' and 'until'"):
        parse_workflow(raw)


def test_iterate_cannot_mix_list_and_convergence_modes() -> None:
    raw = _raw({"iterate": {"over": "a,b", "max": 2, "until": "x", "steps": [_cli("a")]}})

    with pytest.raises(WorkflowValidationError, match="cannot be combined"):
        parse_workflow(raw)


def test_branches_are_not_allowed_on_iterate_nodes() -> None:
    raw = _raw(
        {
            "iterate": {"over": "a", "steps": [_cli("a")]},
            "branches": [{"condition": "true", "steps": [_cli("b")]}],
        }
    )

    with pytest.raises(WorkflowValidationError, match="only allowed on step nodes"):
        parse_workflow(raw)


def test_iterate_keys_prefer_explicit_id_then_first_step_then_path() -> None:
    workflow = parse_workflow(
        _raw(
            {"iterate": {"id": "retry-restart", "max": 2, "until": "ok", "steps": [_cli("a")]}},
            {"iterate": {"over": "x,y", "steps": [_cli("b")]}},
            {
                "iterate": {
                    "over": "1,2",
                    "steps": [{"iterate": {"over": "p", "steps": [_cli("c")]}}],
                }
            },
        )
    )

    index = TreeIndex.build(workflow.tree)

    assert set(index.iterates) == {"retry-restart", "b", "tree[2]/iterate", "c"}
    outer = workflow.tree[2].iterate
    assert outer is not None
    assert iterate_key(outer, "tree[2]") == "tree[2]/iterate"
    assert index.key_for(outer) == "tree[2]/iterate"


def test_duplicate_iterate_ids_are_rejected() -> None:
    workflow = parse_workflow(
        _raw(
            {"iterate": {"id": "loop", "over": "a", "steps": [_cli("a")]}},
            {"iterate": {"id": "loop", "over": "b", "steps": [_cli("b")]}},
        )
    )

    with pytest.raises(WorkflowValidationError, match="duplicate iterate key 'loop'"):
        validate_workflow(workflow)


def test_legacy_aliases_are_accepted() -> None:
    workflow = parse_workflow(
        _raw(
            {
                "step": {
                    "id": "triage",
                    "type": "invoke",
                    "invoke": {"runbook": "triage", "inputs": {"host": "{{ host }}"}},
                }
            },
            {
                "step": {
                    "id": "decide",
                    "type": "manual",
                    "outcomes": [
                        {"state": "needs_rca", "next_runbook": {"file": "rca.runbook.yaml"}}
                    ],
                }
            },
        )
    )

    invoke = workflow.tree[0].step.invoke  # type: ignore[union-attr]
    assert invoke is not None and invoke.workflow == "triage"
    outcome = workflow.tree[1].step.outcomes[0]  # type: ignore[union-attr]
    assert outcome.next_workflow is not None
    assert outcome.next_workflow.file == "rca.runbook.yaml"


def test_imports_are_normalized_on_parse() -> None:
    raw = _raw(_cli("a"))
    raw["imports"] = {"triage": "shared/triage", "rca": "rca.runbook", "raw": "x.yml"}

    workflow = parse_workflow(raw)

    assert workflow.imports == {
        "triage": "shared/triage.runbook.yaml",
        "rca": "rca.runbook.yaml",
        "raw": "x.yml",
    }


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("foo", "foo.runbook.yaml"),
        ("foo.runbook", "foo.runbook.yaml"),
        ("foo.runbook.yaml", "foo.runbook.yaml"),
        ("dir/foo.yml", "dir/foo.yml"),
    ],
)
def test_normalize_import(ref: str, expected: str) -> None:
    assert normalize_import(ref) == expected


def test_resolve_reference_uses_imports_and_base_dir(tmp_path: Path) -> None:
    imports = {"triage": "shared/triage.runbook.yaml"}

    assert resolve_reference("triage", imports=imports, base_dir=tmp_path) == (
        tmp_path / "shared" / "triage.runbook.yaml"
    )
    assert resolve_reference("other.runbook.yaml", imports=imports, base_dir=tmp_path) == (
        tmp_path / "other.runbook.yaml"
    )
    absolute = tmp_path / "abs.runbook.yaml"
    assert resolve_reference(str(absolute), imports={}, base_dir=Path("/elsewhere")) == absolute


def test_initial_vars_overlay_input_defaults() -> None:
    workflow = parse_workflow(
        _raw(
            _cli("a"),
            vars={"region": "eu-west-1"},
            inputs={
                "region": {"default": "us-east-1"},
                "host": {"from": "prompt", "default": "web-1"},
                "ticket": {"pattern": "^INC-[0-9]+$"},
            },
        )
    )

    assert workflow.initial_vars() == {"region": "eu-west-1", "host": "web-1"}
    assert workflow.meta.inputs["host"].source == "prompt"


def test_assertion_requires_exactly_one_check() -> None:
    assert Assertion(contains="ok").kind == "contains"
    with pytest.raises(ValueError, match="exactly one"):
        Assertion(contains="ok", exit_code=0)
    with pytest.raises(ValueError, match="exactly one"):
        Assertion()


def test_invalid_yaml_and_non_mapping_documents(write_workflow) -> None:
    broken = write_workflow("broken.runbook.yaml", "meta: [unclosed\n")
    listing = write_workflow("list.runbook.yaml", "- just\n- a list\n")

    with pytest.raises(WorkflowValidationError, match="invalid YAML"):
        load_workflow(broken)
    with pytest.raises(WorkflowValidationError, match="must be a YAML mapping"):
        load_workflow(listing)


def test_missing_file_reports_path(tmp_path: Path) -> None:
    missing = tmp_path / "nope.runbook.yaml"

    with pytest.raises(WorkflowValidationError) as excinfo:
        load_workflow(missing)

    assert excinfo.value.path == str(missing)
    assert "cannot read workflow" in str(excinfo.value)
