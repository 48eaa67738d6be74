"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    source_ref: str = Field(min_length=1)
    calibration_hint: Optional[Dict[str, Any]] = None


class RunResponse(BaseModel):
    """Response after creating or moving a run."""

    run_id: UUID
    phase: str
    current_step: int
    status: str
    reset_epoch: int


class StepStatus(BaseModel):
    """Per-step summary inside a run status."""

    step_index: int
    name: str
    attempt_count: int
    max_attempts: int
    auto_retry_enabled: bool
    status: str
    approved: bool
    artifact_ref: Optional[str] = None


class RunStatus(BaseModel):
    """Run status response."""

    run_id: UUID
    source_ref: str
    phase: str
    current_step: int
    status: str
    reset_epoch: int
    total_attempts: int
    asset_counts: Dict[str, int]  # {'pending': X, 'generating': Y, ...}
    steps: List[StepStatus]


class TransitionRequest(BaseModel):
    target_phase: str


class RestartRequest(BaseModel):
    auto_start: bool = False


class EvaluateRequest(BaseModel):
    """Raw judge verdict submitted for evaluation."""

    verdict: Dict[str, Any]


class EvaluateResponse(BaseModel):
    decision: str
    reason: str
    retry_delta: Optional[Dict[str, Any]] = None
    delay_seconds: Optional[float] = None
    step_status: str
    attempt_count: int


class RetryResponse(BaseModel):
    """Response after an explicit step retry."""

    attempt_number: int
    dispatched: List[Dict[str, Any]]
    retry_delta: Optional[Dict[str, Any]] = None


class AutoRetryResponse(BaseModel):
    step_index: int
    auto_retry_enabled: bool


class BatchStartResponse(BaseModel):
    step_index: int
    phase: str
    results: List[Dict[str, Any]]


class EventResponse(BaseModel):
    step_index: int
    asset_id: Optional[UUID] = None
    type: str
    message: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
