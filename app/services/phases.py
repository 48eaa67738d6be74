"""Pipeline phase state machine: step contract table, transitions, restart and rollback."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.errors import InvalidInputError, InvalidTransitionError
from app.models.asset import IN_FLIGHT_STATUSES, OPPOSITE, Attempt, GenerationAsset
from app.models.event import PipelineEvent
from app.models.job import Job
from app.models.run import PipelineRun
from app.models.space import Space
from app.models.step import StepOutput, StepRetryState
from app.services.events import record_event

logger = logging.getLogger(__name__)

UPLOAD = "upload"
COMPLETED = "completed"
FAILED = "failed"

# Spaces are produced by this step; restarting at or before it discards them
SPACE_DETECTION_STEP = 3

RESTART_SUPERSEDED = "RESTART_SUPERSEDED"


@dataclass(frozen=True)
class StepSpec:
    """Phase contract for one step."""

    index: int
    name: str
    pending: str
    running: Optional[str]
    review: str
    auto_start: bool = False
    per_space: bool = False
    paired: bool = False
    category: str = ""

    @property
    def phases(self) -> Tuple[str, ...]:
        return tuple(p for p in (self.pending, self.running, self.review) if p)


STEPS: Tuple[StepSpec, ...] = (
    StepSpec(0, "space_analysis", "space_analysis_pending", "space_analysis_running",
             "space_analysis_complete", auto_start=True, category="space_analysis"),
    StepSpec(1, "top_down_3d", "top_down_3d_pending", "top_down_3d_running",
             "top_down_3d_review", auto_start=True, category="top_down_render"),
    StepSpec(2, "style", "style_pending", "style_running",
             "style_review", auto_start=True, category="styled_render"),
    StepSpec(3, "detect_spaces", "detect_spaces_pending", "detecting_spaces",
             "spaces_detected", auto_start=True, category="space_detection"),
    StepSpec(4, "camera_intent", "camera_intent_pending", None,
             "camera_intent_confirmed", category="camera_intent"),
    StepSpec(5, "renders", "renders_pending", "renders_in_progress",
             "renders_review", per_space=True, paired=True, category="space_render"),
    StepSpec(6, "panoramas", "panoramas_pending", "panoramas_in_progress",
             "panoramas_review", per_space=True, category="panorama"),
    StepSpec(7, "merge", "merging_pending", "merging_in_progress",
             "merging_review", per_space=True, category="merge_360"),
)

LAST_STEP = STEPS[-1].index

_PHASE_TO_STEP: Dict[str, int] = {phase: step_def.index for step_def in STEPS for phase in step_def.phases}
_PHASE_TO_STEP[UPLOAD] = 0
_PHASE_TO_STEP[COMPLETED] = LAST_STEP


def get_step(step_index: int) -> StepSpec:
    """Look up a step, rejecting indices outside the table."""
    if not isinstance(step_index, int) or not 0 <= step_index < len(STEPS):
        raise InvalidInputError(f"Unknown step index: {step_index}")
    return STEPS[step_index]


def legal_phases(step_index: int) -> Tuple[str, ...]:
    """All phases a run may be in while current_step == step_index."""
    step_def = get_step(step_index)
    extra = ()
    if step_index == 0:
        extra = (UPLOAD,)
    elif step_index == LAST_STEP:
        extra = (COMPLETED,)
    return extra + step_def.phases + (FAILED,)


def step_for_phase(phase: str) -> Optional[int]:
    """Step owning a phase; None for 'failed', which belongs to every step."""
    return _PHASE_TO_STEP.get(phase)


def legal_successors(phase: str, current_step: int) -> List[str]:
    """Phases reachable from `phase` by a single transition."""
    step_def = get_step(current_step)
    successors: List[str] = []

    if phase == UPLOAD:
        successors.append(STEPS[0].pending)
    elif phase == step_def.pending:
        # Decision-only steps have no running phase
        successors.append(step_def.running or step_def.review)
    elif step_def.running and phase == step_def.running:
        successors.append(step_def.review)
    elif phase == step_def.review:
        if step_def.running:
            successors.append(step_def.running)
        if current_step < LAST_STEP:
            successors.append(STEPS[current_step + 1].pending)
        else:
            successors.append(COMPLETED)

    if phase not in (FAILED, COMPLETED):
        successors.append(FAILED)
    return successors


def assert_consistent(run: PipelineRun) -> None:
    """Raise if the run's phase is not legal for its current step."""
    if run.phase not in legal_phases(run.current_step):
        raise RuntimeError(
            f"Run {run.run_id} phase {run.phase!r} is not legal for step {run.current_step}"
        )


def transition(db: Session, run: PipelineRun, target: str, commit: bool = True) -> PipelineRun:
    """
    Move a run to `target` if it is a legal successor of its current phase.

    Args:
        db: Database session
        run: Run to move
        target: Target phase name
        commit: Commit the change (callers composing a larger unit pass False)

    Returns:
        The updated run

    Raises:
        InvalidTransitionError: If target is not a legal successor
    """
    current = run.phase
    if target not in legal_successors(current, run.current_step):
        raise InvalidTransitionError(
            f"Cannot transition from {current!r} to {target!r}",
            {"from_phase": current, "to_phase": target, "current_step": run.current_step},
        )

    target_step = step_for_phase(target)
    if target_step is not None:
        run.current_step = target_step
    run.phase = target

    if target == COMPLETED:
        run.status = "completed"
    elif target == FAILED:
        run.status = "failed"
    elif target == get_step(run.current_step).running:
        run.status = "active"

    assert_consistent(run)

    if commit:
        db.commit()

    logger.info(f"Run {run.run_id}: {current} -> {target} (step {run.current_step})")
    return run


def _release_inflight(db: Session, run_id, step_index: int) -> List[GenerationAsset]:
    """
    Settle earlier-step assets left queued or generating by a restart.

    Their jobs are gone and any running attempt fails the epoch fence, so an
    asset with a previous output returns to review and one without is failed.
    """
    stranded = (
        db.query(GenerationAsset)
        .filter(
            GenerationAsset.run_id == run_id,
            GenerationAsset.step_index < step_index,
            GenerationAsset.status.in_(IN_FLIGHT_STATUSES),
        )
        .all()
    )
    for asset in stranded:
        if asset.output_ref:
            asset.mark("needs_review", block_reason=None)
        else:
            asset.mark(
                "failed",
                block_reason={
                    "code": RESTART_SUPERSEDED,
                    "message": f"Generation superseded by restart of step {step_index}",
                },
            )
    return stranded


def _resync_spaces(db: Session, run_id) -> None:
    """Rebuild each space's Primary/Opposite status mirror from the surviving assets."""
    spaces = db.query(Space).filter(Space.run_id == run_id).all()
    by_id = {space.space_id: space for space in spaces}
    for space in spaces:
        space.primary_status = "pending"
        space.opposite_status = "pending"

    survivors = (
        db.query(GenerationAsset)
        .filter(GenerationAsset.run_id == run_id, GenerationAsset.space_id.isnot(None))
        .order_by(GenerationAsset.step_index, GenerationAsset.created_at)
        .all()
    )
    for asset in survivors:
        space = by_id.get(asset.space_id)
        if space is None:
            continue
        if asset.kind == OPPOSITE:
            space.opposite_status = asset.status
        else:
            space.primary_status = asset.status


def restart(db: Session, run: PipelineRun, step_index: int) -> PipelineRun:
    """
    Discard everything produced at or after a step and reset the run to its pending phase.

    Deletes assets, attempts, events, step outputs and retry state for
    steps >= step_index (and spaces when restarting at or before space
    detection), then bumps reset_epoch so that any worker still running under
    the old epoch fails its fence and discards its result. Every open job of
    the run is dropped and earlier-step assets left in flight are settled.
    """
    step_def = get_step(step_index)
    if step_index > run.current_step:
        raise InvalidInputError(
            f"Cannot restart step {step_index}: run is at step {run.current_step}"
        )

    run_id = run.run_id

    # Atomic increment; concurrent fences on the old epoch now match zero rows
    db.query(PipelineRun).filter(PipelineRun.run_id == run_id).update(
        {PipelineRun.reset_epoch: PipelineRun.reset_epoch + 1},
        synchronize_session=False,
    )

    deleted = {}
    deleted["attempts"] = (
        db.query(Attempt)
        .filter(Attempt.run_id == run_id, Attempt.step_index >= step_index)
        .delete(synchronize_session=False)
    )
    deleted["assets"] = (
        db.query(GenerationAsset)
        .filter(GenerationAsset.run_id == run_id, GenerationAsset.step_index >= step_index)
        .delete(synchronize_session=False)
    )
    deleted["events"] = (
        db.query(PipelineEvent)
        .filter(PipelineEvent.run_id == run_id, PipelineEvent.step_index >= step_index)
        .delete(synchronize_session=False)
    )
    deleted["jobs"] = (
        db.query(Job)
        .filter(
            Job.run_id == run_id,
            or_(Job.step_index >= step_index, Job.status.in_(("queued", "running"))),
        )
        .delete(synchronize_session=False)
    )
    db.query(StepOutput).filter(
        StepOutput.run_id == run_id, StepOutput.step_index >= step_index
    ).delete(synchronize_session=False)
    db.query(StepRetryState).filter(
        StepRetryState.run_id == run_id, StepRetryState.step_index >= step_index
    ).delete(synchronize_session=False)

    if step_index <= SPACE_DETECTION_STEP:
        deleted["spaces"] = db.query(Space).filter(Space.run_id == run_id).delete(
            synchronize_session=False
        )

    released = _release_inflight(db, run_id, step_index)
    if step_index > SPACE_DETECTION_STEP:
        _resync_spaces(db, run_id)

    # Run budget counts only attempts that still exist
    remaining = (
        db.query(func.coalesce(func.sum(GenerationAsset.attempt_count), 0))
        .filter(GenerationAsset.run_id == run_id)
        .scalar()
    )

    record_event(
        db,
        run_id,
        max(step_index - 1, 0),
        "step_restarted",
        f"Restarted at step {step_index} ({step_def.name})",
        payload={
            "step_index": step_index,
            "deleted": deleted,
            "released_asset_ids": [str(a.asset_id) for a in released],
        },
    )

    db.expire(run)
    run.total_attempts = remaining
    run.current_step = step_index
    run.phase = step_def.pending
    run.status = "active"
    db.commit()
    db.refresh(run)

    logger.info(f"Restarted run {run_id} at step {step_index} (epoch {run.reset_epoch}): {deleted}")
    return run


def rollback(db: Session, run: PipelineRun, step_index: int) -> PipelineRun:
    """Move a run back to an earlier step's review phase without deleting anything."""
    step_def = get_step(step_index)
    if step_index >= run.current_step:
        raise InvalidTransitionError(
            f"Rollback target step {step_index} must be before current step {run.current_step}",
            {"from_phase": run.phase, "to_phase": step_def.review, "current_step": run.current_step},
        )

    previous = run.phase
    run.current_step = step_index
    run.phase = step_def.review
    run.status = "active"
    assert_consistent(run)
    db.commit()

    logger.info(f"Rolled back run {run.run_id}: {previous} -> {step_def.review}")
    return run


def fence(db: Session, run_id, epoch: int) -> bool:
    """
    Compare-and-swap guard on reset_epoch.

    Touches the run row only if its epoch still equals the captured one. On
    PostgreSQL the UPDATE also row-locks the run until the caller commits, so
    a restart cannot interleave with the write that follows.

    Returns:
        True if the epoch matched and the caller may persist its result
    """
    rows = (
        db.query(PipelineRun)
        .filter(PipelineRun.run_id == run_id, PipelineRun.reset_epoch == epoch)
        .update({PipelineRun.updated_at: datetime.utcnow()}, synchronize_session=False)
    )
    return rows == 1
