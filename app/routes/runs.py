"""Run routes."""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.asset import ASSET_STATUSES, GenerationAsset
from app.models.event import PipelineEvent
from app.models.run import PipelineRun
from app.models.step import StepOutput, StepRetryState
from app.schemas.asset import AssetResponse, AssetsCreate, SpaceResponse, SpacesCreate
from app.schemas.run import (
    AutoRetryResponse,
    BatchStartResponse,
    EvaluateRequest,
    EvaluateResponse,
    EventResponse,
    RestartRequest,
    RetryResponse,
    RunCreate,
    RunResponse,
    RunStatus,
    StepStatus,
    TransitionRequest,
)
from app.services import orchestrator, phases
from app.services.retry_controller import evaluate_and_record, get_retry_policy, set_auto_retry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


def _run_response(run: PipelineRun) -> RunResponse:
    return RunResponse(
        run_id=run.run_id,
        phase=run.phase,
        current_step=run.current_step,
        status=run.status,
        reset_epoch=run.reset_epoch,
    )


@router.post("", response_model=RunResponse)
def create_run(
    data: RunCreate,
    db: Session = Depends(get_db),
):
    """Create a new run for an uploaded source image."""
    run = PipelineRun(
        source_ref=data.source_ref,
        phase=phases.UPLOAD,
        current_step=0,
        status="active",
        reset_epoch=0,
        total_attempts=0,
        calibration_hint=data.calibration_hint,
    )
    db.add(run)
    db.commit()

    logger.info(f"Created run {run.run_id}")

    return _run_response(run)


@router.get("/list")
def list_runs(db: Session = Depends(get_db)):
    """List all runs with basic info."""
    runs = db.query(PipelineRun).order_by(PipelineRun.created_at.desc()).all()
    return [
        {
            "run_id": str(r.run_id),
            "source_ref": r.source_ref,
            "phase": r.phase,
            "current_step": r.current_step,
            "status": r.status,
            "created_at": r.created_at.isoformat() if r.created_at else None,
        }
        for r in runs
    ]


@router.get("/{run_id}", response_model=RunStatus)
def get_run_status(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get run status, per-step retry state and asset counts."""
    run = orchestrator.get_run(db, run_id)

    asset_counts = {}
    for status in ASSET_STATUSES:
        count = db.query(func.count(GenerationAsset.asset_id)).filter(
            GenerationAsset.run_id == run_id,
            GenerationAsset.status == status,
        ).scalar()
        asset_counts[status] = count

    outputs = {o.step_index: o for o in db.query(StepOutput).filter(StepOutput.run_id == run_id).all()}
    states = {s.step_index: s for s in db.query(StepRetryState).filter(StepRetryState.run_id == run_id).all()}
    default_max = get_retry_policy().max_attempts_per_step

    steps = []
    for spec in phases.STEPS:
        state = states.get(spec.index)
        output = outputs.get(spec.index)
        steps.append(
            StepStatus(
                step_index=spec.index,
                name=spec.name,
                attempt_count=state.attempt_count if state else 0,
                max_attempts=state.max_attempts if state else default_max,
                auto_retry_enabled=state.auto_retry_enabled if state else True,
                status=state.status if state else "pending",
                approved=output.approved if output else False,
                artifact_ref=output.artifact_ref if output else None,
            )
        )

    return RunStatus(
        run_id=run.run_id,
        source_ref=run.source_ref,
        phase=run.phase,
        current_step=run.current_step,
        status=run.status,
        reset_epoch=run.reset_epoch,
        total_attempts=run.total_attempts,
        asset_counts=asset_counts,
        steps=steps,
    )


@router.post("/{run_id}/transition", response_model=RunResponse)
def transition_run(
    run_id: uuid.UUID,
    data: TransitionRequest,
    db: Session = Depends(get_db),
):
    """Move the run to a legal successor phase."""
    run = orchestrator.get_run(db, run_id)
    phases.transition(db, run, data.target_phase)
    return _run_response(run)


@router.post("/{run_id}/continue", response_model=RunResponse)
def continue_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Advance from the current step's review phase to the next step."""
    run = orchestrator.get_run(db, run_id)
    orchestrator.continue_run(db, run)
    return _run_response(run)


@router.post("/{run_id}/spaces", response_model=List[SpaceResponse])
def register_spaces(
    run_id: uuid.UUID,
    data: SpacesCreate,
    db: Session = Depends(get_db),
):
    """Register the spaces detected for a run."""
    run = orchestrator.get_run(db, run_id)
    spaces = orchestrator.register_spaces(db, run, data.spaces)
    return [SpaceResponse.model_validate(s) for s in spaces]


@router.post("/{run_id}/steps/{step}/assets", response_model=List[AssetResponse])
def create_step_assets(
    run_id: uuid.UUID,
    step: int,
    data: AssetsCreate,
    db: Session = Depends(get_db),
):
    """Create candidate asset slots for a step."""
    run = orchestrator.get_run(db, run_id)
    assets = orchestrator.create_step_assets(db, run, step, data.items)
    return [AssetResponse.model_validate(a) for a in assets]


@router.get("/{run_id}/steps/{step}/assets", response_model=List[AssetResponse])
def list_step_assets(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """List the assets of a step."""
    orchestrator.get_run(db, run_id)
    phases.get_step(step)
    return [AssetResponse.model_validate(a) for a in orchestrator.step_assets(db, run_id, step)]


@router.post("/{run_id}/steps/{step}/start", response_model=BatchStartResponse)
def start_step(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """Start generation for every pending asset of a step."""
    run = orchestrator.get_run(db, run_id)
    results = orchestrator.start_step(db, run, step)
    return BatchStartResponse(step_index=step, phase=run.phase, results=results)


@router.post("/{run_id}/steps/{step}/evaluate", response_model=EvaluateResponse)
def evaluate_qa(
    run_id: uuid.UUID,
    step: int,
    data: EvaluateRequest,
    db: Session = Depends(get_db),
):
    """Evaluate a judge verdict for a step against the retry policy."""
    run = orchestrator.get_run(db, run_id)
    decision, state = evaluate_and_record(db, run, step, data.verdict)
    return EvaluateResponse(
        decision=decision.action,
        reason=decision.reason,
        retry_delta=decision.retry_delta.model_dump() if decision.retry_delta else None,
        delay_seconds=decision.delay_seconds,
        step_status=state.status,
        attempt_count=state.attempt_count,
    )


@router.post("/{run_id}/steps/{step}/retry", response_model=RetryResponse)
def execute_retry(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """Explicitly retry a step's failed or blocked assets."""
    run = orchestrator.get_run(db, run_id)
    return RetryResponse(**orchestrator.execute_retry(db, run, step))


@router.post("/{run_id}/steps/{step}/auto-retry/stop", response_model=AutoRetryResponse)
def stop_auto_retry(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """Stop scheduling automatic attempts for a step."""
    run = orchestrator.get_run(db, run_id)
    state = set_auto_retry(db, run, step, enabled=False)
    return AutoRetryResponse(step_index=step, auto_retry_enabled=state.auto_retry_enabled)


@router.post("/{run_id}/steps/{step}/auto-retry/enable", response_model=AutoRetryResponse)
def enable_auto_retry(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """Resume scheduling automatic attempts for a step."""
    run = orchestrator.get_run(db, run_id)
    state = set_auto_retry(db, run, step, enabled=True)
    return AutoRetryResponse(step_index=step, auto_retry_enabled=state.auto_retry_enabled)


@router.post("/{run_id}/steps/{step}/restart")
def restart_step(
    run_id: uuid.UUID,
    step: int,
    data: Optional[RestartRequest] = None,
    db: Session = Depends(get_db),
):
    """Delete everything from a step onward and reset it to pending."""
    run = orchestrator.get_run(db, run_id)
    run, auto_started = orchestrator.restart_step(db, run, step, auto_start=bool(data and data.auto_start))
    return {**_run_response(run).model_dump(mode="json"), "auto_started": auto_started}


@router.post("/{run_id}/steps/{step}/rollback", response_model=RunResponse)
def rollback_step(
    run_id: uuid.UUID,
    step: int,
    db: Session = Depends(get_db),
):
    """Move back to an earlier step's review phase without deleting anything."""
    run = orchestrator.get_run(db, run_id)
    phases.rollback(db, run, step)
    return _run_response(run)


@router.get("/{run_id}/events", response_model=List[EventResponse])
def list_events(
    run_id: uuid.UUID,
    step: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Get the run's event log, optionally for one step."""
    orchestrator.get_run(db, run_id)
    query = db.query(PipelineEvent).filter(PipelineEvent.run_id == run_id)
    if step is not None:
        query = query.filter(PipelineEvent.step_index == step)
    events = query.order_by(PipelineEvent.event_pk).all()
    return [
        EventResponse(
            step_index=e.step_index,
            asset_id=e.asset_id,
            type=e.type,
            message=e.message,
            payload=e.payload,
            created_at=e.created_at,
        )
        for e in events
    ]


@router.delete("/{run_id}")
def delete_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Delete a run and all associated data."""
    run = orchestrator.get_run(db, run_id)

    phases.restart(db, run, 0)
    db.delete(run)
    db.commit()

    logger.info(f"Deleted run {run_id}")

    return {"message": "Run deleted"}
