"""Run endpoints.

Each handler looks the run up in the registry (resuming it from disk when
this process has not seen it yet), calls one :class:`RunSession` operation
and returns the result together with the events it produced.

All routes are mounted under `/api`.
"""

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import APIRouter, HTTPException, Request

from runbook_engine.errors import (
    NoPendingStep,
    PendingUserConflict,
    ResumeError,
    RunbookError,
    UnknownRun,
)
from runbook_engine.server.models import (
    AdvanceResponse,
    ApiEvent,
    CancelResponse,
    ChooseOutcomeRequest,
    RunResponse,
    SaveScenarioRequest,
    SaveScenarioResponse,
    SubmitChoiceRequest,
    SubmitEvidenceRequest,
    SubmitEvidenceResponse,
    VariablesResponse,
)
from runbook_engine.service import RunManifest, RunRegistry, RunSession, StartParams

logger = logging.getLogger(__name__)

router = APIRouter()


def _registry(request: Request) -> RunRegistry:
    registry = getattr(request.app.state, "registry", None)
    if not isinstance(registry, RunRegistry):
        raise HTTPException(status_code=500, detail="Run registry not configured")
    return registry


def _raise_http(e: RunbookError) -> NoReturn:
    if isinstance(e, UnknownRun):
        raise HTTPException(status_code=404, detail=str(e)) from e
    if isinstance(e, (PendingUserConflict, NoPendingStep)):
        raise HTTPException(status_code=409, detail=str(e)) from e
    if isinstance(e, ResumeError):
        logger.warning("Resume failed", extra={"error": str(e)})
    raise HTTPException(status_code=422, detail=str(e)) from e


def _session(request: Request, run_id: str) -> RunSession:
    try:
        return _registry(request).get(run_id)
    except RunbookError as e:
        _raise_http(e)


def _events(session: RunSession) -> list[ApiEvent]:
    return [ApiEvent.model_validate(event.to_json()) for event in session.drain_events()]


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/runs", response_model=RunResponse, status_code=201)
def start_run(req: StartParams, request: Request) -> RunResponse:
    try:
        session = _registry(request).start(req)
    except RunbookError as e:
        _raise_http(e)
    return RunResponse(run=session.summary(), events=_events(session))


@router.post("/runs/{run_id}/resume", response_model=RunResponse)
def resume_run(run_id: str, request: Request) -> RunResponse:
    try:
        session = _registry(request).resume(run_id)
    except RunbookError as e:
        _raise_http(e)
    return RunResponse(run=session.summary(resumed=True), events=_events(session))


@router.post("/runs/{run_id}/advance", response_model=AdvanceResponse)
def advance_run(run_id: str, request: Request) -> AdvanceResponse:
    session = _session(request, run_id)
    try:
        result = session.advance()
    except RunbookError as e:
        _raise_http(e)
    return AdvanceResponse(result=result, events=_events(session))


@router.post("/runs/{run_id}/choose-outcome", response_model=AdvanceResponse)
def choose_outcome(run_id: str, req: ChooseOutcomeRequest, request: Request) -> AdvanceResponse:
    session = _session(request, run_id)
    try:
        result = session.choose_outcome(state=req.state, index=req.index)
    except RunbookError as e:
        _raise_http(e)
    return AdvanceResponse(result=result, events=_events(session))


@router.post("/runs/{run_id}/submit-choice", response_model=VariablesResponse)
def submit_choice(run_id: str, req: SubmitChoiceRequest, request: Request) -> VariablesResponse:
    session = _session(request, run_id)
    values = session.submit_choice(req.variable, req.value)
    return VariablesResponse(run_id=run_id, **values)


@router.post("/runs/{run_id}/submit-evidence", response_model=SubmitEvidenceResponse)
def submit_evidence(
    run_id: str, req: SubmitEvidenceRequest, request: Request
) -> SubmitEvidenceResponse:
    session = _session(request, run_id)
    try:
        step_id = session.submit_evidence(req.step_id, req.evidence)
    except RunbookError as e:
        _raise_http(e)
    return SubmitEvidenceResponse(run_id=run_id, step_id=step_id, names=sorted(req.evidence))


@router.get("/runs/{run_id}/variables", response_model=VariablesResponse)
def get_variables(run_id: str, request: Request) -> VariablesResponse:
    session = _session(request, run_id)
    return VariablesResponse(run_id=run_id, **session.get_variables())


@router.get("/runs/{run_id}/manifest", response_model=RunManifest)
def get_manifest(run_id: str, request: Request) -> RunManifest:
    return _session(request, run_id).get_manifest()


@router.post("/runs/{run_id}/save-scenario", response_model=SaveScenarioResponse)
def save_scenario(run_id: str, req: SaveScenarioRequest, request: Request) -> SaveScenarioResponse:
    session = _session(request, run_id)
    try:
        directory = session.save_scenario(req.directory)
    except OSError as e:
        raise HTTPException(status_code=422, detail=f"cannot write scenario: {e}") from e
    return SaveScenarioResponse(run_id=run_id, directory=str(directory))


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
def cancel_run(run_id: str, request: Request) -> CancelResponse:
    session = _session(request, run_id)
    result = session.cancel()
    if result is None:
        return CancelResponse(run_id=run_id, cancelled=False)
    return CancelResponse(run_id=run_id, cancelled=True, result=result, events=_events(session))
