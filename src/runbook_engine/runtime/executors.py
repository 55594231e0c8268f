"""Command, tool and evidence collaborators.

The engine never talks to the outside world directly: commands go through a
:class:`CommandExecutor`, tool actions through a :class:`ToolExecutor` and
operator input through an :class:`EvidenceCollector`. Real, dry-run and
replay implementations are swapped in per run mode.
"""

from __future__ import annotations

import hashlib
import logging
import subprocess
import threading
import time
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from runbook_engine.errors import EvidenceRequired, StepCancelled
from runbook_engine.session.models import EvidenceValue, RecordedCommand, utc_iso_now

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1

DRY_RUN_OUTPUT = "<dry-run>"


@dataclass(frozen=True, slots=True)
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    captures: dict[str, str] = field(default_factory=dict)
    duration: float = 0.0


@dataclass(frozen=True, slots=True)
class Approval:
    actor: str
    role: str
    timestamp: str = ""


class CommandExecutor(Protocol):
    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult: ...


class ToolExecutor(Protocol):
    def run_tool_action(
        self,
        tool: str,
        action: str,
        args: Mapping[str, str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult: ...


class EvidenceCollector(Protocol):
    """Supplies operator input for manual steps.

    Implementations raise :class:`~runbook_engine.errors.EvidenceRequired` when
    the input is not available yet; the engine then parks the step.
    """

    def prompt_text(self, step_id: str, name: str, instructions: str) -> str: ...

    def prompt_checklist(self, step_id: str, name: str, items: Sequence[str]) -> dict[str, bool]: ...

    def prompt_attachment(self, step_id: str, name: str, instructions: str) -> EvidenceValue: ...

    def prompt_approval(self, step_id: str, roles: Sequence[str], minimum: int) -> list[Approval]: ...


def tool_argv(tool: str, action: str, args: Mapping[str, str]) -> list[str]:
    """Canonical argv used to record and replay a tool action."""

    return [f"tool:{tool}", action, *(f"{k}={args[k]}" for k in sorted(args))]


class SubprocessExecutor:
    """Run commands on the local machine."""

    def __init__(self, *, cwd: Path | None = None, env: Mapping[str, str] | None = None) -> None:
        self._cwd = cwd
        self._env = dict(env) if env is not None else None

    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        started = time.monotonic()
        deadline = started + timeout if timeout else None
        logger.info("Running command", extra={"argv": list(argv), "timeout": timeout})

        proc = subprocess.Popen(  # noqa: S603 (argv comes from the workflow author)
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=self._cwd,
            env=self._env,
        )
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    proc.kill()
                    proc.communicate()
                    raise StepCancelled(f"command cancelled: {' '.join(argv)}") from None
                if deadline is not None and time.monotonic() >= deadline:
                    proc.kill()
                    stdout, stderr = proc.communicate()
                    return CommandResult(
                        stdout=stdout,
                        stderr=stderr + f"\ncommand timed out after {timeout}s",
                        exit_code=-1,
                        duration=time.monotonic() - started,
                    )

        return CommandResult(
            stdout=stdout,
            stderr=stderr,
            exit_code=proc.returncode,
            duration=time.monotonic() - started,
        )


class DryRunExecutor:
    """Pretends every command and tool action succeeded."""

    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        logger.info("Dry-run: would execute command", extra={"argv": list(argv)})
        return CommandResult(stdout=DRY_RUN_OUTPUT)

    def run_tool_action(
        self,
        tool: str,
        action: str,
        args: Mapping[str, str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        logger.info("Dry-run: would invoke tool", extra={"tool": tool, "action": action})
        return CommandResult(stdout=DRY_RUN_OUTPUT)


class RecordingExecutor:
    """Wraps executors and keeps every exchange so a run can be saved as a scenario."""

    def __init__(
        self,
        commands: CommandExecutor,
        tools: ToolExecutor | None = None,
        *,
        records: list[RecordedCommand] | None = None,
    ) -> None:
        self._commands = commands
        self._tools = tools
        self.records: list[RecordedCommand] = records if records is not None else []

    @property
    def has_tools(self) -> bool:
        return self._tools is not None

    def run_command(
        self,
        argv: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        result = self._commands.run_command(argv, timeout=timeout, cancel=cancel)
        self._record(list(argv), result)
        return result

    def run_tool_action(
        self,
        tool: str,
        action: str,
        args: Mapping[str, str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        if self._tools is None:
            raise LookupError(f"no tool executor configured for tool {tool!r}")
        result = self._tools.run_tool_action(tool, action, args, timeout=timeout, cancel=cancel)
        self._record(tool_argv(tool, action, args), result)
        return result

    def _record(self, argv: list[str], result: CommandResult) -> None:
        self.records.append(
            RecordedCommand(
                argv=argv, stdout=result.stdout, stderr=result.stderr, exit_code=result.exit_code
            )
        )


class SubmittedEvidenceCollector:
    """Reads evidence that the operator submitted for a step.

    ``submitted`` is shared with the session so values posted through
    ``submit_evidence`` become visible on the next advance.
    """

    def __init__(self, submitted: MutableMapping[str, dict[str, EvidenceValue]]) -> None:
        self._submitted = submitted

    def _get(self, step_id: str, name: str) -> EvidenceValue:
        value = self._submitted.get(step_id, {}).get(name)
        if value is None:
            raise EvidenceRequired(step_id, [name])
        return value

    def prompt_text(self, step_id: str, name: str, instructions: str) -> str:
        return self._get(step_id, name).value

    def prompt_checklist(self, step_id: str, name: str, items: Sequence[str]) -> dict[str, bool]:
        value = self._get(step_id, name)
        if value.items:
            return {item: bool(value.items.get(item, False)) for item in items}
        # A plain text submission acknowledges every item.
        return {item: True for item in items}

    def prompt_attachment(self, step_id: str, name: str, instructions: str) -> EvidenceValue:
        value = self._get(step_id, name)
        if value.kind != "attachment" or not value.path:
            return value
        path = Path(value.path)
        if not path.is_file():
            return value
        data = path.read_bytes()
        return value.model_copy(
            update={"sha256": hashlib.sha256(data).hexdigest(), "size": len(data)}
        )

    def prompt_approval(self, step_id: str, roles: Sequence[str], minimum: int) -> list[Approval]:
        approvals = [
            Approval(actor=value.value, role=value.role or (roles[0] if roles else ""))
            for value in self._submitted.get(step_id, {}).values()
            if value.kind == "approval"
        ]
        if roles and "any" not in roles:
            approvals = [a for a in approvals if a.role in roles]
        if len(approvals) < minimum:
            raise EvidenceRequired(step_id, [f"approval ({len(approvals)}/{minimum})"])
        return approvals


class DryRunCollector:
    """Returns placeholder values without asking anyone."""

    def prompt_text(self, step_id: str, name: str, instructions: str) -> str:
        return f"<dry-run: {name}>"

    def prompt_checklist(self, step_id: str, name: str, items: Sequence[str]) -> dict[str, bool]:
        return {item: True for item in items}

    def prompt_attachment(self, step_id: str, name: str, instructions: str) -> EvidenceValue:
        return EvidenceValue(kind="attachment", path=f"<dry-run: {name}>")

    def prompt_approval(self, step_id: str, roles: Sequence[str], minimum: int) -> list[Approval]:
        roles = list(roles) or ["any"]
        return [
            Approval(actor="dry-run", role=roles[i % len(roles)], timestamp=utc_iso_now())
            for i in range(minimum)
        ]
