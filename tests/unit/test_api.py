from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from runbook_engine.server.app import create_app
from runbook_engine.server.config import ServerSettings
from runbook_engine.service import RunRegistry

WORKFLOW = """
apiVersion: runbook/v1
meta:
  name: api-demo
  vars: {ticket: INC-0}
tree:
  - step:
      id: check
      type: cli
      with: {argv: [check]}
      capture: {status: stdout}
  - step:
      id: decide
      type: manual
      instructions: Status is {{ status }}
      outcomes:
        - when: status == "ok"
          state: resolved
          recommendation: Close {{ ticket }}
        - state: escalated
"""


@pytest.fixture
def workflow_path(write_workflow) -> Path:
    return write_workflow("api-demo.runbook.yaml", WORKFLOW)


@pytest.fixture
def client_for(settings, scripted):
    def _client() -> TestClient:
        registry = RunRegistry(settings, commands=scripted({"check": [("ok", 0)]}))
        app = create_app(
            settings, server_settings=ServerSettings(_env_file=None), registry=registry
        )
        return TestClient(app)

    return _client


def _start(client: TestClient, workflow_path: Path, **body: object) -> str:
    resp = client.post("/api/runs", json={"workflow": str(workflow_path), **body})
    assert resp.status_code == 201, resp.text
    return resp.json()["run"]["run_id"]


def test_health_and_cors(client_for) -> None:
    client = client_for()

    resp = client.get("/api/health", headers={"Origin": "http://localhost:5173"})

    assert resp.json() == {"status": "ok"}
    assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"


def test_run_lifecycle_over_http(client_for, workflow_path: Path, tmp_path: Path) -> None:
    client = client_for()

    started = client.post(
        "/api/runs", json={"workflow": str(workflow_path), "vars": {"ticket": "INC-1"}}
    )
    assert started.status_code == 201
    run = started.json()["run"]
    assert run["workflow"] == "api-demo"
    assert run["mode"] == "real"
    assert run["step_count"] == 2
    assert started.json()["events"] == []
    run_id = run["run_id"]

    first = client.post(f"/api/runs/{run_id}/advance").json()
    assert first["result"]["status"] == "step_result"
    assert first["result"]["captures"] == {"status": "ok"}
    assert [e["type"] for e in first["events"]] == ["step.started", "step.completed"]
    assert all(e["payload"]["run_id"] == run_id for e in first["events"])

    parked = client.post(f"/api/runs/{run_id}/advance").json()
    assert parked["result"]["status"] == "awaiting_user"
    assert parked["result"]["instructions"] == "Status is ok"
    assert [o["state"] for o in parked["result"]["outcomes"]] == ["resolved", "escalated"]
    assert parked["events"][-1]["type"] == "input.required"

    variables = client.get(f"/api/runs/{run_id}/variables").json()
    assert variables["captures"] == {"status": "ok"}
    assert variables["vars"]["ticket"] == "INC-1"

    assert client.post(f"/api/runs/{run_id}/choose-outcome", json={}).status_code == 422

    chosen = client.post(f"/api/runs/{run_id}/choose-outcome", json={"state": "resolved"})
    assert chosen.status_code == 200
    outcome = chosen.json()["result"]["outcome"]
    assert outcome["state"] == "resolved"
    assert outcome["recommendation"] == "Close INC-1"

    manifest = client.get(f"/api/runs/{run_id}/manifest").json()
    assert manifest["status"] == "outcome"
    assert manifest["outcome"]["state"] == "resolved"
    assert manifest["steps_summary"] == {"total": 2, "passed": 2, "failed": 0, "skipped": 0}

    again = client.post(f"/api/runs/{run_id}/advance").json()
    assert again["result"]["status"] == "outcome"

    conflict = client.post(f"/api/runs/{run_id}/choose-outcome", json={"index": 1})
    assert conflict.status_code == 409

    scenario_dir = tmp_path / "scenario"
    saved = client.post(
        f"/api/runs/{run_id}/save-scenario", json={"directory": str(scenario_dir)}
    )
    assert saved.status_code == 200
    assert (scenario_dir / "scenario.yaml").is_file()
    assert (scenario_dir / "inputs.yaml").is_file()


def test_runs_resume_in_a_fresh_app(client_for, workflow_path: Path) -> None:
    run_id = _start(client_for(), workflow_path)
    first = client_for()
    first.post(f"/api/runs/{run_id}/advance")
    first.post(f"/api/runs/{run_id}/advance")

    resumed = client_for().post(f"/api/runs/{run_id}/resume")

    assert resumed.status_code == 200
    run = resumed.json()["run"]
    assert run["resumed"] is True
    assert run["status"] == "awaiting_user"
    assert run["pending_step"] == "decide"
    assert [h["step_id"] for h in run["history"]] == ["check"]


def test_choice_and_evidence_endpoints(client_for, workflow_path: Path) -> None:
    client = client_for()
    run_id = _start(client, workflow_path)

    choice = client.post(
        f"/api/runs/{run_id}/submit-choice", json={"variable": "strategy", "value": "drain"}
    )
    assert choice.status_code == 200
    assert choice.json()["vars"]["strategy"] == "drain"

    no_pending = client.post(
        f"/api/runs/{run_id}/submit-evidence",
        json={"evidence": {"note": {"kind": "text", "value": "x"}}},
    )
    assert no_pending.status_code == 409

    explicit = client.post(
        f"/api/runs/{run_id}/submit-evidence",
        json={"step_id": "decide", "evidence": {"note": {"kind": "text", "value": "x"}}},
    )
    assert explicit.json() == {"run_id": run_id, "step_id": "decide", "names": ["note"]}

    bad_choice = client.post(f"/api/runs/{run_id}/submit-choice", json={"variable": ""})
    assert bad_choice.status_code == 422


def test_errors_map_to_status_codes(client_for, tmp_path: Path) -> None:
    client = client_for()

    assert client.get("/api/runs/nope/manifest").status_code == 404
    assert client.post("/api/runs/nope/advance").status_code == 404
    assert client.post("/api/runs/nope/resume").status_code == 404

    missing = client.post("/api/runs", json={"workflow": str(tmp_path / "absent.runbook.yaml")})
    assert missing.status_code == 422
    assert "cannot read workflow" in missing.json()["detail"]

    bogus = client.post(
        "/api/runs", json={"workflow": str(tmp_path / "absent.runbook.yaml"), "mode": "bogus"}
    )
    assert bogus.status_code == 422


def test_cancel_endpoint_fails_the_run(client_for, workflow_path: Path) -> None:
    client = client_for()
    run_id = _start(client, workflow_path)
    client.post(f"/api/runs/{run_id}/advance")

    resp = client.post(f"/api/runs/{run_id}/cancel")

    assert resp.status_code == 200
    body = resp.json()
    assert body["cancelled"] is True
    assert body["result"]["status"] == "failed"
    assert body["events"][-1]["type"] == "run.failed"
    assert client.get(f"/api/runs/{run_id}/manifest").json()["status"] == "failed"
    assert client.post("/api/runs/nope/cancel").status_code == 404
