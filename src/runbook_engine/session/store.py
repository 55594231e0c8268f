"""File-backed session persistence.

One JSON document per run at ``<runs_dir>/<run_id>/session.json``,
overwritten after every mutating request.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from runbook_engine.errors import ResumeError, UnknownRun
from runbook_engine.session.models import SessionState, utc_iso_now

logger = logging.getLogger(__name__)

SESSION_FILE = "session.json"


@dataclass
class SessionStore:
    runs_dir: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def path(self, run_id: str) -> Path:
        return self.runs_dir / run_id / SESSION_FILE

    def exists(self, run_id: str) -> bool:
        return self.path(run_id).is_file()

    def save(self, session: SessionState) -> Path:
        path = self.path(session.root_run_id)
        session.saved_at = utc_iso_now()
        payload = session.model_dump(mode="json", by_alias=True)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
            )
        logger.debug("Session saved", extra={"run_id": session.root_run_id, "path": str(path)})
        return path

    def load(self, run_id: str) -> SessionState:
        path = self.path(run_id)
        with self._lock:
            if not path.exists():
                raise UnknownRun(f"no session found for run {run_id!r} under {self.runs_dir}")
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ResumeError(f"cannot read session {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ResumeError(f"session {path} is not a JSON object")
        try:
            return SessionState.model_validate(raw)
        except ValidationError as e:
            raise ResumeError(f"session {path} is invalid: {e}") from e

    def list_runs(self) -> list[str]:
        if not self.runs_dir.exists():
            return []
        return sorted(p.parent.name for p in self.runs_dir.glob(f"*/{SESSION_FILE}"))
