"""Deterministic replay of recorded runs.

A scenario directory holds ``scenario.yaml`` (recorded command responses and
operator evidence) and optionally ``inputs.yaml`` (the run's resolved
variables). Replay is fail-closed: a command with no unused recorded entry
raises :class:`~runbook_engine.errors.ReplayMismatch`.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from runbook_engine.errors import EvidenceRequired, ReplayMismatch, RunbookError
from runbook_engine.runtime.executors import Approval, CommandResult, tool_argv
from runbook_engine.session.models import EvidenceValue, RecordedCommand

logger = logging.getLogger(__name__)

SCENARIO_FILE = "scenario.yaml"
INPUTS_FILE = "inputs.yaml"

_TIMESTAMP = re.compile(r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?")


class Scenario(BaseModel):
    reference_time: str = ""
    commands: list[RecordedCommand] = Field(default_factory=list)
    evidence: dict[str, dict[str, EvidenceValue]] = Field(default_factory=dict)
    inputs: dict[str, str] = Field(default_factory=dict)

    @field_validator("evidence", mode="before")
    @classmethod
    def _plain_text_evidence(cls, value: Any) -> Any:
        # `name: some text` is shorthand for a text evidence value.
        if not isinstance(value, dict):
            return value
        return {
            step_id: {
                name: {"kind": "text", "value": str(item)} if not isinstance(item, dict) else item
                for name, item in (entries or {}).items()
            }
            for step_id, entries in value.items()
        }


def load_scenario(directory: str | Path) -> Scenario:
    directory = Path(directory)
    raw: dict[str, Any] = {}
    try:
        scenario_file = directory / SCENARIO_FILE
        if scenario_file.exists():
            raw = yaml.safe_load(scenario_file.read_text(encoding="utf-8")) or {}
        inputs_file = directory / INPUTS_FILE
        if inputs_file.exists():
            inputs = yaml.safe_load(inputs_file.read_text(encoding="utf-8")) or {}
            raw["inputs"] = {str(k): "" if v is None else str(v) for k, v in inputs.items()}
    except (OSError, yaml.YAMLError, AttributeError) as e:
        raise RunbookError(f"cannot read scenario in {directory}: {e}") from e

    if not isinstance(raw, dict):
        raise RunbookError(f"{directory / SCENARIO_FILE}: scenario must be a YAML mapping")
    try:
        return Scenario.model_validate(raw)
    except ValidationError as e:
        raise RunbookError(f"invalid scenario in {directory}: {e}") from e


def write_scenario(
    directory: str | Path,
    *,
    inputs: Mapping[str, str],
    commands: Iterable[RecordedCommand],
    evidence: Mapping[str, Mapping[str, EvidenceValue]],
) -> Path:
    """Write ``inputs.yaml`` and ``scenario.yaml`` so the run can be replayed."""

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    (directory / INPUTS_FILE).write_text(
        yaml.safe_dump(dict(inputs), sort_keys=True, allow_unicode=True), encoding="utf-8"
    )
    document = {
        "commands": [c.model_dump(mode="json") for c in commands],
        "evidence": {
            step_id: {
                name: value.model_dump(mode="json", exclude_defaults=True)
                for name, value in values.items()
            }
            for step_id, values in evidence.items()
        },
    }
    (directory / SCENARIO_FILE).write_text(
        yaml.safe_dump(document, sort_keys=False, allow_unicode=True), encoding="utf-8"
    )
    return directory


def _parse_timestamp(text: str) -> datetime:
    body = text.rstrip("Z")
    if "." in body:
        head, frac = body.split(".", 1)
        body = f"{head}.{frac[:6]:0<6}"
        parsed = datetime.strptime(body, "%Y-%m-%dT%H:%M:%S.%f")
    else:
        parsed = datetime.strptime(body, "%Y-%m-%dT%H:%M:%S")
    return parsed.replace(tzinfo=UTC)


def _format_like(moment: datetime, original: str) -> str:
    text = moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S")
    body = original.rstrip("Z")
    if "." in body:
        width = len(body.split(".", 1)[1])
        micros = f"{moment.microsecond:06d}"
        text += "." + (micros[:width] if width <= 6 else micros + "0" * (width - 6))
    if original.endswith("Z"):
        text += "Z"
    return text


class TimeRebaser:
    """Shift recorded timestamps so they look fresh at replay time.

    Each timestamp keeps its offset from ``original_ref``, applied to
    ``replay_ref``; sub-second precision of the recorded text is preserved.
    """

    def __init__(self, original_ref: datetime, replay_ref: datetime | None = None) -> None:
        self.original_ref = original_ref
        self.replay_ref = replay_ref or datetime.now(tz=UTC)

    @classmethod
    def anchored_to_latest(
        cls, texts: Iterable[str], replay_ref: datetime | None = None
    ) -> TimeRebaser | None:
        """Rebaser mapping the newest timestamp found in ``texts`` to ``replay_ref``."""

        latest: datetime | None = None
        for text in texts:
            for match in _TIMESTAMP.finditer(text):
                try:
                    moment = _parse_timestamp(match.group(0))
                except ValueError:
                    continue
                if latest is None or moment > latest:
                    latest = moment
        if latest is None:
            return None
        return cls(latest, replay_ref)

    def rebase(self, text: str) -> str:
        def _shift(match: re.Match[str]) -> str:
            original = match.group(0)
            try:
                moment = _parse_timestamp(original)
            except ValueError:
                return original
            return _format_like(self.replay_ref + (moment - self.original_ref), original)

        return _TIMESTAMP.sub(_shift, text)


def parse_reference_time(value: str) -> datetime:
    """Parse a ``--rebase-time`` value; ``now`` means the current UTC time."""

    if value.strip().lower() == "now":
        return datetime.now(tz=UTC)
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ReplayExecutor:
    """Serves recorded responses; each recorded entry is used at most once."""

    def __init__(self, scenario: Scenario, *, rebaser: TimeRebaser | None = None) -> None:
        self._commands = list(scenario.commands)
        self._used = [False] * len(self._commands)
        self._lock = threading.Lock()
        self._rebaser = rebaser

    def mark_used(self, argv: Sequence[str]) -> None:
        """Consume the entry a previous process already replayed."""

        with self._lock:
            self._take(list(argv))

    def _take(self, argv: list[str]) -> RecordedCommand | None:
        for i, entry in enumerate(self._commands):
            if not self._used[i] and entry.argv == argv:
                self._used[i] = True
                return entry
        return None

    def _respond(self, argv: list[str]) -> CommandResult:
        with self._lock:
            entry = self._take(argv)
        if entry is None:
            raise ReplayMismatch(argv)
        stdout = entry.stdout
        if self._rebaser is not None:
            stdout = self._rebaser.rebase(stdout)
        logger.debug("Replayed command", extra={"argv": argv, "exit_code": entry.exit_code})
        return CommandResult(stdout=stdout, stderr=entry.stderr, exit_code=entry.exit_code)

    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        return self._respond(list(argv))

    def run_tool_action(
        self,
        tool: str,
        action: str,
        args: Mapping[str, str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        return self._respond(tool_argv(tool, action, args))


class ScenarioCollector:
    """Answers evidence prompts from the scenario's recorded evidence."""

    def __init__(self, evidence: Mapping[str, Mapping[str, EvidenceValue]]) -> None:
        self._evidence = evidence

    def _get(self, step_id: str, name: str) -> EvidenceValue:
        value = self._evidence.get(step_id, {}).get(name)
        if value is None:
            raise EvidenceRequired(step_id, [name])
        return value

    def prompt_text(self, step_id: str, name: str, instructions: str) -> str:
        return self._get(step_id, name).value

    def prompt_checklist(self, step_id: str, name: str, items: Sequence[str]) -> dict[str, bool]:
        value = self._get(step_id, name)
        return {item: bool(value.items.get(item, not value.items)) for item in items}

    def prompt_attachment(self, step_id: str, name: str, instructions: str) -> EvidenceValue:
        return self._get(step_id, name)

    def prompt_approval(self, step_id: str, roles: Sequence[str], minimum: int) -> list[Approval]:
        approvals = [
            Approval(actor=value.value, role=value.role)
            for value in self._evidence.get(step_id, {}).values()
            if value.kind == "approval"
        ]
        if len(approvals) < minimum:
            raise EvidenceRequired(step_id, [f"approval ({len(approvals)}/{minimum})"])
        return approvals
