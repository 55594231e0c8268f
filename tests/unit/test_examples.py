from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType

import pytest

from runbook_engine.workflow.loader import load_workflow

EXAMPLES = Path(__file__).resolve().parents[2] / "examples"


def _load_example() -> ModuleType:
    spec = importlib.util.spec_from_file_location("basic_usage", EXAMPLES / "basic_usage.py")
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize("name", ["service-restart", "health-check"])
def test_example_workflows_validate(name: str) -> None:
    workflow, index = load_workflow(EXAMPLES / f"{name}.runbook.yaml")

    assert workflow.meta.name == name
    assert index.order


def test_basic_usage_replays_the_recorded_scenario(
    settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys
) -> None:
    monkeypatch.chdir(tmp_path)
    example = _load_example()
    monkeypatch.setattr(example, "configure_logging", lambda *_a, **_k: None)

    assert example.main(["--choose", "resolved"]) == 0

    out = capsys.readouterr().out
    assert "  restart: passed" in out
    assert "  confirm: passed" in out
    assert "Outcome: resolved" in out
    assert "Recommendation: Close INC-1234" in out


def test_basic_usage_stops_at_the_outcome_prompt(
    settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys
) -> None:
    monkeypatch.chdir(tmp_path)
    example = _load_example()
    monkeypatch.setattr(example, "configure_logging", lambda *_a, **_k: None)

    assert example.main([]) == 0

    out = capsys.readouterr().out
    assert "Waiting on step decide: Close or investigate" in out
    assert "  [1] needs_rca" in out
