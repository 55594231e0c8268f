#!/usr/bin/env python3
"""Programmatic run example.

This drives a workflow with the engine components directly:

* load settings from `.env`
* start a run (replay mode by default, against a recorded scenario)
* advance it step by step, answering outcome prompts with `--choose`

The session is persisted under `RUNBOOK_RUNS_DIR` after every call, so the
run can be continued later with `runbook-engine advance <run_id>`.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Sequence

from runbook_engine.config import EngineSettings
from runbook_engine.logging import configure_logging
from runbook_engine.runtime.engine import AdvanceResult
from runbook_engine.service import RunSession, StartParams

HERE = Path(__file__).resolve().parent


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow (programmatic example).")
    parser.add_argument(
        "--workflow",
        default=str(HERE / "service-restart.runbook.yaml"),
        help="Workflow file to run",
    )
    parser.add_argument("--mode", default="replay", choices=["real", "dry-run", "replay"])
    parser.add_argument(
        "--scenario-dir",
        default=str(HERE / "scenarios" / "service-restart"),
        help="Recorded scenario used in replay mode",
    )
    parser.add_argument(
        "--choose",
        default="",
        help='Outcome state picked whenever a step asks for one, e.g. "resolved" (optional)',
    )
    return parser.parse_args(argv)


def _drive(session: RunSession, choose: str) -> AdvanceResult:
    result = session.advance()
    while True:
        if result.status == "awaiting_user" and choose and result.outcomes:
            result = session.choose_outcome(state=choose)
            continue
        if result.status != "step_result":
            return result
        print(f"  {result.step_id}: {result.step_status}")
        result = session.advance()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    session = RunSession.start(
        StartParams(
            workflow=args.workflow,
            mode=args.mode,
            scenario_dir=args.scenario_dir if args.mode == "replay" else "",
        ),
        settings=settings,
    )
    print(f"Started run {session.run_id} ({session.mode})")

    result = _drive(session, args.choose)

    if result.status == "awaiting_user":
        print(f"Waiting on step {result.step_id}: {result.instructions or result.title}")
        for option in result.outcomes:
            print(f"  [{option.index}] {option.state}")
        return 0
    if result.status == "failed":
        print(f"Run failed at {result.step_id}: {result.error}")
        return 1

    if result.outcome is not None:
        print(f"Outcome: {result.outcome.state}")
        if result.outcome.recommendation:
            print(f"Recommendation: {result.outcome.recommendation}")
    else:
        print("Completed")
    print(f"Session: {session.store.path(session.run_id)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
