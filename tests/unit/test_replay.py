from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from runbook_engine.errors import EvidenceRequired, ReplayMismatch, RunbookError
from runbook_engine.runtime.replay import (
    ReplayExecutor,
    Scenario,
    ScenarioCollector,
    TimeRebaser,
    load_scenario,
    parse_reference_time,
)
from runbook_engine.session.models import RecordedCommand


def _at(text: str) -> datetime:
    return datetime.fromisoformat(text).replace(tzinfo=UTC)


def test_rebase_keeps_offsets_and_precision() -> None:
    rebaser = TimeRebaser(_at("2024-01-01T00:00:00"), _at("2024-06-01T00:00:00"))

    text = "alert fired 2023-12-31T22:30:00.123Z, acked 2024-01-01T00:00:00"

    assert rebaser.rebase(text) == (
        "alert fired 2024-05-31T22:30:00.123Z, acked 2024-06-01T00:00:00"
    )


def test_rebase_leaves_text_without_timestamps_alone() -> None:
    rebaser = TimeRebaser(_at("2024-01-01T00:00:00"), _at("2024-06-01T00:00:00"))

    assert rebaser.rebase("no clocks here") == "no clocks here"


def test_anchored_to_latest_maps_newest_timestamp_to_replay_time() -> None:
    rebaser = TimeRebaser.anchored_to_latest(
        ["first 2024-01-01T10:00:00Z", "then 2024-01-02T10:00:00Z and nothing"],
        _at("2024-03-01T00:00:00"),
    )

    assert rebaser is not None
    assert rebaser.original_ref == _at("2024-01-02T10:00:00")
    assert rebaser.rebase("2024-01-01T10:00:00Z") == "2024-02-29T00:00:00Z"
    assert TimeRebaser.anchored_to_latest(["plain output"]) is None


def test_parse_reference_time() -> None:
    assert parse_reference_time("2024-06-01T12:00:00Z") == _at("2024-06-01T12:00:00")
    assert parse_reference_time("2024-06-01T12:00:00") == _at("2024-06-01T12:00:00")
    assert parse_reference_time("now").tzinfo is not None
    with pytest.raises(ValueError):
        parse_reference_time("yesterday")


def test_replay_serves_each_entry_once_and_fails_closed() -> None:
    scenario = Scenario(
        commands=[
            RecordedCommand(argv=["status"], stdout="degraded"),
            RecordedCommand(argv=["status"], stdout="healthy"),
            RecordedCommand(argv=["restart", "web"], exit_code=3, stderr="busy"),
        ]
    )
    executor = ReplayExecutor(scenario)

    assert executor.run_command(["status"]).stdout == "degraded"
    assert executor.run_command(["status"]).stdout == "healthy"
    restart = executor.run_command(["restart", "web"])
    assert (restart.exit_code, restart.stderr) == (3, "busy")

    with pytest.raises(ReplayMismatch, match="no recorded response for command: status"):
        executor.run_command(["status"])


def test_mark_used_consumes_entries_replayed_earlier() -> None:
    scenario = Scenario(
        commands=[
            RecordedCommand(argv=["status"], stdout="first"),
            RecordedCommand(argv=["status"], stdout="second"),
        ]
    )
    executor = ReplayExecutor(scenario)

    executor.mark_used(["status"])

    assert executor.run_command(["status"]).stdout == "second"


def test_tool_actions_replay_by_canonical_argv() -> None:
    scenario = Scenario(
        commands=[RecordedCommand(argv=["tool:pager", "ack", "id=42", "team=sre"], stdout="acked")]
    )
    executor = ReplayExecutor(scenario)

    result = executor.run_tool_action("pager", "ack", {"team": "sre", "id": "42"})

    assert result.stdout == "acked"


def test_replay_rebases_stdout_when_configured() -> None:
    scenario = Scenario(commands=[RecordedCommand(argv=["date"], stdout="2024-01-01T00:00:00Z")])
    rebaser = TimeRebaser(_at("2024-01-01T00:00:00"), _at("2025-01-01T00:00:00"))

    executor = ReplayExecutor(scenario, rebaser=rebaser)

    assert executor.run_command(["date"]).stdout == "2025-01-01T00:00:00Z"


def test_load_scenario_reads_evidence_shorthand_and_inputs(write_workflow, tmp_path: Path) -> None:
    write_workflow(
        "case/scenario.yaml",
        """
        reference_time: "2024-01-01T00:00:00Z"
        commands:
          - {argv: [df, -h], stdout: "91%"}
        evidence:
          confirm:
            note: looked at the dashboard
            approval_1: {kind: approval, value: alice, role: sre}
        """,
    )
    write_workflow("case/inputs.yaml", "host: web-1\nretries: 3\nempty:\n")

    scenario = load_scenario(tmp_path / "case")

    assert scenario.reference_time == "2024-01-01T00:00:00Z"
    assert scenario.commands[0].argv == ["df", "-h"]
    assert scenario.inputs == {"host": "web-1", "retries": "3", "empty": ""}
    note = scenario.evidence["confirm"]["note"]
    assert (note.kind, note.value) == ("text", "looked at the dashboard")
    assert scenario.evidence["confirm"]["approval_1"].role == "sre"


def test_load_scenario_of_empty_directory_is_empty(tmp_path: Path) -> None:
    scenario = load_scenario(tmp_path)

    assert scenario.commands == []
    assert scenario.inputs == {}


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("commands: [unclosed\n", "cannot read scenario"),
        ("- a\n- b\n", "must be a YAML mapping"),
        ("commands: [{stdout: missing-argv}]\n", "invalid scenario"),
    ],
)
def test_load_scenario_errors(write_workflow, tmp_path: Path, content: str, message: str) -> None:
    write_workflow("bad/scenario.yaml", content)

    with pytest.raises(RunbookError, match=message):
        load_scenario(tmp_path / "bad")


def test_scenario_collector_answers_from_recorded_evidence() -> None:
    scenario = Scenario.model_validate(
        {
            "evidence": {
                "confirm": {
                    "note": "done",
                    "steps": {"kind": "checklist", "items": {"drain": True, "restart": False}},
                    "approval_1": {"kind": "approval", "value": "alice", "role": "sre"},
                }
            }
        }
    )
    collector = ScenarioCollector(scenario.evidence)

    assert collector.prompt_text("confirm", "note", "") == "done"
    assert collector.prompt_checklist("confirm", "steps", ["drain", "restart"]) == {
        "drain": True,
        "restart": False,
    }
    assert [a.actor for a in collector.prompt_approval("confirm", ["sre"], 1)] == ["alice"]
    with pytest.raises(EvidenceRequired) as excinfo:
        collector.prompt_approval("confirm", ["sre"], 2)
    assert excinfo.value.missing == ["approval (1/2)"]
    with pytest.raises(EvidenceRequired):
        collector.prompt_text("other", "note", "")
