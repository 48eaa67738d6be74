"""Batch orchestrator: admits assets, enqueues generation jobs and aggregates step state."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.errors import (
    BudgetExhaustedError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
)
from app.models.asset import OPPOSITE, PRIMARY, TERMINAL_STATUSES, GenerationAsset
from app.models.job import Job
from app.models.run import PipelineRun
from app.models.space import Space
from app.models.step import StepOutput
from app.schemas.retry import RetryDelta
from app.services import phases
from app.services.dependency_gate import (
    PRIMARY_DEPENDENCY_REQUIRED,
    block_opposite,
    find_opposites,
    find_primary,
    is_anchor_ready,
    resolve_anchor,
)
from app.services.events import record_event
from app.services.idempotency import Admission, check_admission, claim
from app.services.retry_controller import get_or_create_step_state, get_retry_policy

logger = logging.getLogger(__name__)

REJECTED_BY_REVIEWER = "REJECTED_BY_REVIEWER"

# Statuses an explicit retry may re-dispatch
RETRYABLE_STATUSES = ("failed", "blocked", "needs_review")


def get_run(db: Session, run_id) -> PipelineRun:
    run = db.query(PipelineRun).filter(PipelineRun.run_id == run_id).first()
    if not run:
        raise NotFoundError(f"Run {run_id} not found")
    return run


def get_asset(db: Session, asset_id) -> GenerationAsset:
    asset = db.query(GenerationAsset).filter(GenerationAsset.asset_id == asset_id).first()
    if not asset:
        raise NotFoundError(f"Asset {asset_id} not found")
    return asset


def step_assets(db: Session, run_id, step_index: int) -> List[GenerationAsset]:
    """Assets of a step, Primaries first."""
    assets = (
        db.query(GenerationAsset)
        .filter(GenerationAsset.run_id == run_id, GenerationAsset.step_index == step_index)
        .order_by(GenerationAsset.created_at)
        .all()
    )
    return sorted(assets, key=lambda a: 0 if a.kind == PRIMARY else 1)


def enqueue_job(
    db: Session,
    run: PipelineRun,
    asset: GenerationAsset,
    retry_delta: Optional[RetryDelta] = None,
    delay_seconds: float = 0,
    is_auto_retry: bool = False,
) -> Job:
    """Queue a generation job capturing the run's current reset_epoch."""
    payload: Dict[str, Any] = {"asset_id": str(asset.asset_id)}
    if retry_delta is not None:
        payload["retry_delta"] = retry_delta.model_dump()

    job = Job(
        run_id=run.run_id,
        asset_id=asset.asset_id,
        step_index=asset.step_index,
        agent="generate",
        status="queued",
        payload=payload,
        reset_epoch=run.reset_epoch,
        is_auto_retry=is_auto_retry,
        run_at=datetime.utcnow() + timedelta(seconds=delay_seconds or 0),
    )
    db.add(job)
    return job


def _ensure_running(db: Session, run: PipelineRun, step_index: int) -> None:
    """Move the run into the step's running phase when generation starts there."""
    step_def = phases.get_step(step_index)
    if run.current_step != step_index or step_def.running is None:
        return
    if run.phase in (step_def.pending, step_def.review):
        phases.transition(db, run, step_def.running, commit=False)


def start_generation(
    db: Session,
    asset_id,
    hint_ref: Optional[str] = None,
    force: bool = False,
    retry_delta: Optional[RetryDelta] = None,
) -> Admission:
    """
    Admit an asset into generation and enqueue its job.

    Args:
        db: Database session
        asset_id: Asset to generate
        hint_ref: Caller's view of the Primary output (Opposites only)
        force: Supersede stale in-flight work
        retry_delta: Adjustment to apply to the attempt

    Returns:
        Admission handle; idempotent=True when the asset was already in flight

    Raises:
        NotFoundError, InvalidInputError, DuplicateInProgressError,
        DependencyNotReadyError, BudgetExhaustedError
    """
    asset = get_asset(db, asset_id)
    run = get_run(db, asset.run_id)

    if asset.step_index > run.current_step:
        raise InvalidInputError(
            f"Asset belongs to step {asset.step_index}; run is at step {run.current_step}"
        )

    existing = check_admission(db, asset, force=force)
    if existing is not None:
        db.commit()
        return existing

    anchor = resolve_anchor(db, asset, hint_ref=hint_ref)

    policy = get_retry_policy()
    state = get_or_create_step_state(db, run, asset.step_index)
    if asset.attempt_count >= state.max_attempts:
        raise BudgetExhaustedError(
            f"Asset {asset.asset_id} used {asset.attempt_count}/{state.max_attempts} attempts",
            {"asset_id": str(asset.asset_id), "scope": "step"},
        )
    if run.total_attempts >= policy.max_attempts_per_run:
        raise BudgetExhaustedError(
            f"Run {run.run_id} used {run.total_attempts}/{policy.max_attempts_per_run} attempts",
            {"run_id": str(run.run_id), "scope": "run"},
        )

    fields = {}
    if anchor is not None:
        fields["anchor_ref"] = anchor.anchor_ref
    admission = claim(db, asset, **fields)
    if admission.idempotent:
        db.commit()
        return admission

    enqueue_job(db, run, asset, retry_delta=retry_delta)
    _ensure_running(db, run, asset.step_index)
    state.status = "running"
    record_event(
        db,
        run.run_id,
        asset.step_index,
        "generation_queued",
        f"{asset.kind} asset queued",
        asset_id=asset.asset_id,
        payload={"anchor_ref": fields.get("anchor_ref"), "retry": retry_delta is not None},
    )
    db.commit()

    logger.info(f"Queued asset {asset.asset_id} (run {run.run_id}, step {asset.step_index})")
    return admission


def _admission_result(asset: GenerationAsset, admission: Admission) -> Dict[str, Any]:
    return {
        "asset_id": admission.asset_id,
        "kind": asset.kind,
        "space_id": str(asset.space_id) if asset.space_id else None,
        "accepted": admission.accepted,
        "status": admission.status,
        "idempotent": admission.idempotent,
    }


def _error_result(asset: GenerationAsset, error: PipelineError) -> Dict[str, Any]:
    return {
        "asset_id": str(asset.asset_id),
        "kind": asset.kind,
        "space_id": str(asset.space_id) if asset.space_id else None,
        "accepted": False,
        "status": asset.status,
        "error": error.code,
        "message": error.message,
    }


def start_step(db: Session, run: PipelineRun, step_index: int) -> List[Dict[str, Any]]:
    """
    Fan out generation for every pending asset of the run's current step.

    Primaries (and run-level assets) are admitted immediately. An Opposite is
    admitted only when its Primary already has a usable output; otherwise it
    waits for the Primary's terminal callback, or is gate-blocked at once if
    the Primary already failed.
    """
    step_def = phases.get_step(step_index)
    if run.current_step != step_index:
        raise InvalidTransitionError(
            f"Run is at step {run.current_step}, cannot start step {step_index}",
            {"from_phase": run.phase, "to_phase": step_def.running, "current_step": run.current_step},
        )
    if step_def.running is None:
        raise InvalidInputError(f"Step {step_index} ({step_def.name}) has no generation phase")

    assets = step_assets(db, run.run_id, step_index)
    if not assets:
        raise InvalidInputError(f"Step {step_index} has no assets to generate")

    _ensure_running(db, run, step_index)
    db.commit()

    results: List[Dict[str, Any]] = []
    for asset in assets:
        if asset.status != "pending":
            results.append({**_admission_result(asset, Admission(str(asset.asset_id), asset.status, False)), "skipped": True})
            continue

        if asset.kind == OPPOSITE and asset.space_id is not None:
            primary = find_primary(db, asset)
            if primary is not None and not is_anchor_ready(primary) and primary.status not in ("failed", "blocked"):
                results.append({**_admission_result(asset, Admission(str(asset.asset_id), asset.status, False)), "waiting_for_primary": True})
                continue

        try:
            admission = start_generation(db, asset.asset_id)
            results.append(_admission_result(asset, admission))
        except PipelineError as e:
            logger.warning(f"Asset {asset.asset_id} not admitted: {e.code} {e.message}")
            results.append(_error_result(asset, e))

    logger.info(f"Started step {step_index} for run {run.run_id}: {len(results)} assets")
    return results


def aggregate_step(db: Session, run_id, step_index: int) -> Optional[PipelineRun]:
    """
    Refresh the step output and advance to review once every asset is terminal.

    Runs under a row lock on the run so concurrent completions of assets in
    the same step serialize here; repeated calls are no-ops.
    """
    run = db.query(PipelineRun).filter(PipelineRun.run_id == run_id).with_for_update().first()
    if not run:
        return None

    step_def = phases.get_step(step_index)
    assets = step_assets(db, run_id, step_index)

    step_output = (
        db.query(StepOutput)
        .filter(StepOutput.run_id == run_id, StepOutput.step_index == step_index)
        .first()
    )
    if step_output is None:
        step_output = StepOutput(run_id=run_id, step_index=step_index, approved=False)
        db.add(step_output)

    step_output.outputs = [
        {
            "asset_id": str(a.asset_id),
            "space_id": str(a.space_id) if a.space_id else None,
            "kind": a.kind,
            "output_ref": a.output_ref,
            "status": a.status,
        }
        for a in assets
    ]
    if not step_def.per_space and len(assets) == 1:
        step_output.artifact_ref = assets[0].output_ref

    approved = bool(assets) and all(a.status == "locked_approved" for a in assets)
    if approved and not step_output.approved:
        step_output.approved_at = datetime.utcnow()
    step_output.approved = approved

    all_terminal = bool(assets) and all(a.status in TERMINAL_STATUSES for a in assets)
    if all_terminal and run.current_step == step_index and run.phase == step_def.running:
        phases.transition(db, run, step_def.review, commit=False)
        record_event(db, run_id, step_index, "step_review", f"All {len(assets)} assets terminal")

    state = get_or_create_step_state(db, run, step_index)
    if any(a.status == "blocked" for a in assets):
        run.status = "blocked_for_human"
        state.status = "blocked_for_human"
    elif run.status == "blocked_for_human":
        run.status = "active"

    db.commit()
    return run


def on_asset_terminal(db: Session, asset_id) -> None:
    """Completion callback: release waiting Opposites, then aggregate the step."""
    asset = db.query(GenerationAsset).filter(GenerationAsset.asset_id == asset_id).first()
    if asset is None:
        return

    run_id, step_index = asset.run_id, asset.step_index

    if asset.kind == PRIMARY and asset.space_id is not None and phases.get_step(step_index).paired:
        for opposite in find_opposites(db, asset):
            waiting_on_gate = (
                opposite.status == "blocked"
                and (opposite.block_reason or {}).get("code") == PRIMARY_DEPENDENCY_REQUIRED
            )
            if opposite.status != "pending" and not waiting_on_gate:
                continue
            if is_anchor_ready(asset):
                try:
                    start_generation(db, opposite.asset_id)
                except PipelineError as e:
                    logger.warning(f"Opposite {opposite.asset_id} not started: {e.code} {e.message}")
            elif opposite.status == "pending":
                block_opposite(db, opposite, asset)

    aggregate_step(db, run_id, step_index)


def approve_asset(db: Session, asset_id, notes: Optional[str] = None) -> GenerationAsset:
    """Lock an asset after human review; locked assets are immutable."""
    asset = get_asset(db, asset_id)
    if asset.is_locked:
        return asset

    reviewable = asset.status == "needs_review" or (asset.status == "blocked" and asset.output_ref)
    if not reviewable:
        raise InvalidTransitionError(
            f"Asset {asset.asset_id} in status {asset.status} cannot be approved",
            {"from_status": asset.status, "to_status": "locked_approved"},
        )

    asset.mark("locked_approved", block_reason=None)
    record_event(db, asset.run_id, asset.step_index, "asset_approved", notes or "Approved", asset_id=asset.asset_id)
    db.commit()
    logger.info(f"Approved asset {asset.asset_id}")

    on_asset_terminal(db, asset.asset_id)
    return asset


def reject_asset(db: Session, asset_id, notes: Optional[str] = None) -> GenerationAsset:
    """Fail an asset after human review."""
    asset = get_asset(db, asset_id)
    if asset.status not in ("needs_review", "blocked"):
        raise InvalidTransitionError(
            f"Asset {asset.asset_id} in status {asset.status} cannot be rejected",
            {"from_status": asset.status, "to_status": "failed"},
        )

    asset.mark(
        "failed",
        qa_status="rejected",
        block_reason={"code": REJECTED_BY_REVIEWER, "message": notes or "Rejected by reviewer"},
    )
    record_event(db, asset.run_id, asset.step_index, "asset_rejected", notes or "Rejected", asset_id=asset.asset_id)
    db.commit()
    logger.info(f"Rejected asset {asset.asset_id}")

    on_asset_terminal(db, asset.asset_id)
    return asset


def execute_retry(db: Session, run: PipelineRun, step_index: int) -> Dict[str, Any]:
    """
    Explicit (human-triggered) retry of a step.

    Re-dispatches failed, blocked and needs_review assets with the step's last
    retry delta. An Opposite whose Primary is retried in the same call goes
    back to pending and restarts from the Primary's terminal callback.

    Raises:
        BudgetExhaustedError: If the step or run attempt ceiling is reached
    """
    phases.get_step(step_index)
    policy = get_retry_policy()
    state = get_or_create_step_state(db, run, step_index)

    if state.attempt_count >= state.max_attempts:
        raise BudgetExhaustedError(
            f"Step {step_index} used {state.attempt_count}/{state.max_attempts} attempts",
            {"step_index": step_index, "scope": "step"},
        )
    if run.total_attempts >= policy.max_attempts_per_run:
        raise BudgetExhaustedError(
            f"Run used {run.total_attempts}/{policy.max_attempts_per_run} attempts",
            {"step_index": step_index, "scope": "run"},
        )

    candidates = [a for a in step_assets(db, run.run_id, step_index) if a.status in RETRYABLE_STATUSES]
    if not candidates:
        raise InvalidInputError(f"Step {step_index} has no failed, blocked or reviewable assets to retry")

    delta = RetryDelta(**state.last_retry_delta) if state.last_retry_delta else None
    attempt_number = state.attempt_count + 1
    record_event(db, run.run_id, step_index, "manual_retry", f"Manual retry, attempt {attempt_number}")
    db.commit()

    retried_spaces = set()
    dispatched: List[Dict[str, Any]] = []
    for asset in candidates:
        if asset.kind == OPPOSITE and asset.space_id in retried_spaces:
            asset.mark("pending", block_reason=None)
            db.commit()
            dispatched.append({**_admission_result(asset, Admission(str(asset.asset_id), "pending", False)), "waiting_for_primary": True})
            continue
        try:
            admission = start_generation(db, asset.asset_id, retry_delta=delta)
            dispatched.append(_admission_result(asset, admission))
            if asset.kind == PRIMARY and asset.space_id is not None and admission.accepted:
                retried_spaces.add(asset.space_id)
        except PipelineError as e:
            logger.warning(f"Retry of asset {asset.asset_id} not dispatched: {e.code} {e.message}")
            dispatched.append(_error_result(asset, e))

    logger.info(f"Manual retry of run {run.run_id} step {step_index}: {len(dispatched)} assets")
    return {
        "attempt_number": attempt_number,
        "dispatched": dispatched,
        "retry_delta": delta.model_dump() if delta else None,
    }


def create_step_assets(db: Session, run: PipelineRun, step_index: int, items) -> List[GenerationAsset]:
    """
    Create candidate asset slots for a step.

    Paired steps get a Primary and an Opposite per space, other per-space
    steps a single Primary per space, run-level steps one Primary per item.
    """
    step_def = phases.get_step(step_index)
    if step_index != run.current_step:
        raise InvalidInputError(f"Run is at step {run.current_step}, cannot add assets to step {step_index}")
    if step_def.running is None:
        raise InvalidInputError(f"Step {step_index} ({step_def.name}) produces no assets")

    created: List[GenerationAsset] = []
    for item in items:
        if step_def.per_space:
            if item.space_id is None:
                raise InvalidInputError(f"Step {step_index} ({step_def.name}) requires space_id on every item")
            space = db.query(Space).filter(Space.space_id == item.space_id, Space.run_id == run.run_id).first()
            if not space:
                raise NotFoundError(f"Space {item.space_id} not found in run {run.run_id}")
            created.append(_new_asset(db, run, step_index, PRIMARY, item.prompt, space))
            if step_def.paired:
                created.append(_new_asset(db, run, step_index, OPPOSITE, item.opposite_prompt or item.prompt, space))
        else:
            if item.space_id is not None:
                raise InvalidInputError(f"Step {step_index} ({step_def.name}) is run-level; space_id not allowed")
            created.append(_new_asset(db, run, step_index, PRIMARY, item.prompt, None))

    get_or_create_step_state(db, run, step_index)
    db.commit()
    logger.info(f"Created {len(created)} assets for run {run.run_id} step {step_index}")
    return created


def _new_asset(db: Session, run: PipelineRun, step_index: int, kind: str, prompt: str, space: Optional[Space]) -> GenerationAsset:
    asset = GenerationAsset(
        run_id=run.run_id,
        space_id=space.space_id if space is not None else None,
        step_index=step_index,
        kind=kind,
        status="pending",
        attempt_count=0,
        base_prompt=prompt or "",
    )
    db.add(asset)
    return asset


def register_spaces(db: Session, run: PipelineRun, items) -> List[Space]:
    """Record the spaces detected for a run."""
    if run.current_step < phases.SPACE_DETECTION_STEP:
        raise InvalidInputError(
            f"Spaces are detected at step {phases.SPACE_DETECTION_STEP}; run is at step {run.current_step}"
        )

    spaces = [Space(run_id=run.run_id, name=item.name, space_type=item.space_type) for item in items]
    db.add_all(spaces)
    record_event(db, run.run_id, phases.SPACE_DETECTION_STEP, "spaces_registered", f"{len(spaces)} spaces")
    db.commit()
    logger.info(f"Registered {len(spaces)} spaces for run {run.run_id}")
    return spaces


def restart_step(db: Session, run: PipelineRun, step_index: int, auto_start: bool = False) -> Tuple[PipelineRun, bool]:
    """
    RestartStep: cascade delete and phase reset, optionally regenerating.

    With auto_start on a step that supports it, the run-level asset is
    recreated from the deleted one's base prompt and generation starts.

    Returns:
        (run, auto_started)
    """
    step_def = phases.get_step(step_index)
    previous = (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.run_id == run.run_id,
            GenerationAsset.step_index == step_index,
            GenerationAsset.space_id.is_(None),
        )
        .order_by(GenerationAsset.created_at.desc())
        .first()
    )
    base_prompt = previous.base_prompt if previous is not None else ""

    phases.restart(db, run, step_index)

    if not auto_start:
        return run, False
    if not step_def.auto_start:
        logger.info(f"Step {step_index} ({step_def.name}) does not support auto-start; left in {run.phase}")
        return run, False

    _new_asset(db, run, step_index, PRIMARY, base_prompt, None)
    db.commit()
    start_step(db, run, step_index)
    return run, True


def continue_run(db: Session, run: PipelineRun) -> PipelineRun:
    """Advance from the current step's review phase to the next step."""
    step_def = phases.get_step(run.current_step)
    if run.phase != step_def.review:
        raise InvalidTransitionError(
            f"Run must be in {step_def.review} to continue",
            {"from_phase": run.phase, "to_phase": None, "current_step": run.current_step},
        )

    unresolved = [
        a for a in step_assets(db, run.run_id, run.current_step) if a.status not in ("locked_approved", "failed")
    ]
    if unresolved:
        raise InvalidTransitionError(
            f"{len(unresolved)} assets of step {run.current_step} still need review",
            {"from_phase": run.phase, "to_phase": None, "current_step": run.current_step},
        )

    target = phases.legal_successors(run.phase, run.current_step)
    target = [t for t in target if t not in (step_def.running, phases.FAILED)][0]
    return phases.transition(db, run, target)
