"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

from runbook_engine.runtime.engine import AdvanceResult
from runbook_engine.service import RunSummary
from runbook_engine.session.models import EvidenceValue


class ApiEvent(BaseModel):
    type: str
    at: str
    payload: dict[str, Any] = Field(default_factory=dict)


class RunResponse(BaseModel):
    run: RunSummary
    events: list[ApiEvent] = Field(default_factory=list)


class AdvanceResponse(BaseModel):
    result: AdvanceResult
    events: list[ApiEvent] = Field(default_factory=list)


class ChooseOutcomeRequest(BaseModel):
    state: str | None = None
    index: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _state_or_index(self) -> ChooseOutcomeRequest:
        if self.state is None and self.index is None:
            raise ValueError("either 'state' or 'index' is required")
        return self


class SubmitChoiceRequest(BaseModel):
    variable: str = Field(min_length=1)
    value: str


class SubmitEvidenceRequest(BaseModel):
    step_id: str = ""
    evidence: dict[str, EvidenceValue]


class SubmitEvidenceResponse(BaseModel):
    run_id: str
    step_id: str
    names: list[str]


class VariablesResponse(BaseModel):
    run_id: str
    vars: dict[str, str] = Field(default_factory=dict)
    captures: dict[str, str] = Field(default_factory=dict)


class SaveScenarioRequest(BaseModel):
    directory: str = Field(min_length=1)


class SaveScenarioResponse(BaseModel):
    run_id: str
    directory: str


class CancelResponse(BaseModel):
    run_id: str
    # False when a running step was interrupted; that request reports the failure.
    cancelled: bool
    result: AdvanceResult | None = None
    events: list[ApiEvent] = Field(default_factory=list)
