from __future__ import annotations

import io
import json
import logging

import pytest

from runbook_engine.logging import JsonFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in list(root.handlers):
        if isinstance(handler.formatter, JsonFormatter):
            root.removeHandler(handler)
    root.setLevel(level)


def test_json_formatter_lifts_run_context_and_nests_other_extras() -> None:
    record = logging.LogRecord(
        name="runbook_engine.runtime.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Run %s",
        args=("failed",),
        exc_info=None,
    )
    record.run_id = "r1"
    record.step_id = "restart"
    record.mode = "replay"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "runbook_engine.runtime.engine"
    assert payload["message"] == "Run failed"
    assert (payload["run_id"], payload["step_id"]) == ("r1", "restart")
    assert payload["extra"] == {"mode": "replay"}
    assert "exception" not in payload


def test_configure_logging_writes_one_json_object_per_line(restore_root_logger) -> None:
    stream = io.StringIO()

    configure_logging("debug", stream=stream)
    configure_logging("debug", stream=stream)
    logging.getLogger("runbook_engine.test").debug(
        "Step finished", extra={"run_id": "r2", "status": "passed"}
    )

    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    line = json.loads(lines[0])
    assert line["run_id"] == "r2"
    assert line["extra"] == {"status": "passed"}
    assert restore_root_logger.level == logging.DEBUG
    assert logging.getLogger("uvicorn.access").level == logging.INFO


def test_exceptions_are_rendered(restore_root_logger) -> None:
    stream = io.StringIO()
    configure_logging("INFO", stream=stream)

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logging.getLogger("runbook_engine.test").exception("Command failed")

    payload = json.loads(stream.getvalue())
    assert "RuntimeError: boom" in payload["exception"]
