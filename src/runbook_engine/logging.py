"""Structured logging configuration.

Standard library logging with a JSON formatter, one object per line on
stderr. Engine call sites pass context through ``extra=``; ``run_id`` and
``step_id`` are lifted to the top level so the lines of one run can be
filtered directly (``jq 'select(.run_id == "...")'``), everything else
(``mode``, ``workflow``, ``error``, ...) stays under ``extra``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    logging.LogRecord("", logging.NOTSET, "", 0, "", None, None).__dict__
) | {"message", "asctime"}

CONTEXT_KEYS: tuple[str, ...] = ("run_id", "step_id")


class JsonFormatter(logging.Formatter):
    """Render a record as ``{timestamp, level, logger, message, run_id?, step_id?, extra?}``."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        }
        for key in CONTEXT_KEYS:
            if key in extra:
                payload[key] = extra.pop(key)
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Captures and argv may hold non-JSON values (paths, tuples).
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, stream: Any = None) -> None:
    """Configure root logging with structured JSON output.

    Logs go to stderr by default; stdout carries the CLI's JSON results.
    """

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())

    # uvicorn logs every request at INFO under `runbook-engine serve`.
    logging.getLogger("uvicorn.access").setLevel(max(root.level, logging.INFO))
