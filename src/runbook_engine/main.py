"""CLI entrypoint for the runbook engine.

Every invocation is a fresh process: run commands resume the run from its
persisted `session.json`, perform one operation and persist it again.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from pydantic import BaseModel, ValidationError

from runbook_engine import __version__
from runbook_engine.config import EngineSettings
from runbook_engine.errors import RunbookError, WorkflowValidationError
from runbook_engine.logging import configure_logging
from runbook_engine.service import RunSession, StartParams
from runbook_engine.session.models import EvidenceValue
from runbook_engine.workflow.index import flatten_steps
from runbook_engine.workflow.loader import load_workflow

logger = logging.getLogger(__name__)


def _parse_pairs(values: list[str] | None, *, what: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"{what} must look like name=value, got {item!r}")
        pairs[key.strip()] = value
    return pairs


def _print_json(payload: Any) -> None:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json", exclude_defaults=True)
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="runbook-engine",
        description="Run tree-shaped runbook workflows one step at a time",
    )
    parser.add_argument("--version", action="version", version=f"runbook-engine {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Parse and validate a workflow file")
    validate.add_argument("file", help="Path to a .runbook.yaml workflow")

    start = subparsers.add_parser("start", help="Start a run and print its summary")
    start.add_argument("file", help="Path to a .runbook.yaml workflow")
    start.add_argument(
        "--mode",
        choices=["real", "dry-run", "replay"],
        default=None,
        help="Execution mode (default: RUNBOOK_DEFAULT_MODE)",
    )
    start.add_argument(
        "--var",
        action="append",
        default=None,
        metavar="NAME=VALUE",
        help="Set an input variable (repeatable)",
    )
    start.add_argument("--actor", default="", help="Operator recorded on the run")
    start.add_argument("--scenario-dir", default="", help="Scenario directory for replay mode")
    start.add_argument(
        "--rebase-time",
        default="",
        help="Shift replayed timestamps to this ISO-8601 time ('now' for current UTC)",
    )

    advance = subparsers.add_parser("advance", help="Advance a run until it needs input or ends")
    advance.add_argument("run_id")

    choose = subparsers.add_parser("choose-outcome", help="Resolve the pending step with an outcome")
    choose.add_argument("run_id")
    group = choose.add_mutually_exclusive_group(required=True)
    group.add_argument("--state", default=None, help="Outcome state to choose")
    group.add_argument("--index", type=int, default=None, help="Outcome position (0-based)")

    choice = subparsers.add_parser("submit-choice", help="Set the variable of a choice step")
    choice.add_argument("run_id")
    choice.add_argument("variable")
    choice.add_argument("value")

    evidence = subparsers.add_parser("submit-evidence", help="Submit text evidence for a step")
    evidence.add_argument("run_id")
    evidence.add_argument("step_id", help="Step id ('-' for the pending step)")
    evidence.add_argument("values", nargs="+", metavar="NAME=VALUE")

    status = subparsers.add_parser("status", help="Print the run manifest")
    status.add_argument("run_id")

    save = subparsers.add_parser("save-scenario", help="Write a replayable scenario for a run")
    save.add_argument("run_id")
    save.add_argument("directory")

    cancel = subparsers.add_parser("cancel", help="Cancel a run; it ends as failed")
    cancel.add_argument("run_id")

    serve = subparsers.add_parser("serve", help="Serve the REST API")
    serve.add_argument("--host", default=None, help="Bind address (default: RUNBOOK_SERVER_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: RUNBOOK_SERVER_PORT)")

    return parser


def _serve(settings: EngineSettings, host: str | None, port: int | None) -> int:
    import uvicorn

    from runbook_engine.server.app import create_app
    from runbook_engine.server.config import ServerSettings

    server_settings = ServerSettings()
    uvicorn.run(
        create_app(settings, server_settings=server_settings),
        host=host or server_settings.host,
        port=port or server_settings.port,
        log_config=None,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "validate":
            workflow, _ = load_workflow(args.file)
            steps = flatten_steps(workflow.tree)
            print(f"OK: {workflow.meta.name} ({len(steps)} steps)")
            return 0

        if args.command == "start":
            params = StartParams(
                workflow=args.file,
                mode=args.mode,
                vars=_parse_pairs(args.var, what="--var"),
                actor=args.actor,
                scenario_dir=args.scenario_dir,
                rebase_time=args.rebase_time,
            )
            session = RunSession.start(params, settings=settings)
            _print_json(session.summary())
            return 0

        if args.command == "serve":
            return _serve(settings, args.host, args.port)

        session = RunSession.resume(args.run_id, settings=settings)

        if args.command == "advance":
            _print_json(session.advance())
            return 0

        if args.command == "choose-outcome":
            _print_json(session.choose_outcome(state=args.state, index=args.index))
            return 0

        if args.command == "submit-choice":
            _print_json(session.submit_choice(args.variable, args.value))
            return 0

        if args.command == "submit-evidence":
            values = _parse_pairs(args.values, what="evidence")
            step_id = "" if args.step_id == "-" else args.step_id
            target = session.submit_evidence(
                step_id,
                {name: EvidenceValue(kind="text", value=value) for name, value in values.items()},
            )
            print(f"Evidence recorded for step {target}: {', '.join(sorted(values))}")
            return 0

        if args.command == "status":
            _print_json(session.get_manifest())
            return 0

        if args.command == "cancel":
            _print_json(session.cancel())
            return 0

        if args.command == "save-scenario":
            directory = session.save_scenario(args.directory)
            print(f"Scenario written to {directory}")
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except argparse.ArgumentTypeError as e:
        print(str(e), file=sys.stderr)
        return 2

    except WorkflowValidationError as e:
        print(f"Invalid workflow: {e}", file=sys.stderr)
        return 3

    except RunbookError as e:
        logger.warning(str(e), extra={"error_type": type(e).__name__})
        print(str(e), file=sys.stderr)
        return 3

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
