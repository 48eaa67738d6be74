"""One generate -> judge -> decide -> persist pass for a queued asset.

Every write that depends on the run's state happens under the reset_epoch
fence: if the run was restarted after the job was enqueued, the task's
result is discarded instead of persisted.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.agents.qa_judge import QAJudgeAgent
from app.agents.renderer import RenderAgent
from app.errors import BudgetExhaustedError, DependencyNotReadyError, GenerationServiceError
from app.models.asset import OPPOSITE, Attempt, GenerationAsset
from app.models.job import Job
from app.models.run import PipelineRun
from app.models.step import StepRetryState
from app.schemas.qa import QAVerdict
from app.schemas.retry import RetryDecision, RetryDelta
from app.services import phases
from app.services.dependency_gate import resolve_anchor
from app.services.events import record_event
from app.services.llm_client import LLMClient
from app.services.orchestrator import enqueue_job, on_asset_terminal
from app.services.retry_controller import (
    RetryPolicy,
    RetryState,
    evaluate,
    evaluate_generation_failure,
    get_or_create_step_state,
    get_retry_policy,
)

logger = logging.getLogger(__name__)

DONE = "done"
DISCARDED = "discarded"
CANCELLED = "cancelled"
BLOCKED = "blocked"

# Decisions that park the asset for a human rather than failing it
_HUMAN_BLOCK_CODES = ("AUTO_RETRY_DISABLED", "STEP_BUDGET_EXHAUSTED", "RUN_BUDGET_EXHAUSTED")


@dataclass(frozen=True)
class JobTicket:
    """The fields of a claimed job the task needs; the row itself may be deleted by a restart."""

    job_id: uuid.UUID
    run_id: uuid.UUID
    asset_id: uuid.UUID
    reset_epoch: int
    is_auto_retry: bool
    payload: Dict[str, Any]

    @classmethod
    def from_job(cls, job: Job) -> "JobTicket":
        return cls(
            job_id=job.job_id,
            run_id=job.run_id,
            asset_id=job.asset_id,
            reset_epoch=job.reset_epoch,
            is_auto_retry=bool(job.is_auto_retry),
            payload=dict(job.payload or {}),
        )


class GenerationTask:
    """Runs a single generation job against one database session."""

    def __init__(self, db: Session, llm_client: LLMClient, policy: Optional[RetryPolicy] = None):
        self.db = db
        self.llm = llm_client
        self.policy = policy or get_retry_policy()
        self.renderer = RenderAgent(llm_client, db)
        self.judge = QAJudgeAgent(llm_client, db)

    def _load(self, job: JobTicket):
        db = self.db
        asset = db.query(GenerationAsset).filter(GenerationAsset.asset_id == job.asset_id).first()
        run = db.query(PipelineRun).filter(PipelineRun.run_id == job.run_id).first()
        return asset, run

    def _state(self, run: PipelineRun, step_index: int) -> StepRetryState:
        return get_or_create_step_state(self.db, run, step_index)

    def run(self, job: Job) -> str:
        """
        Execute a job.

        Returns:
            'done', 'discarded' (stale epoch or asset no longer queued),
            'cancelled' (auto-retry stopped) or 'blocked'
        """
        db = self.db
        job = JobTicket.from_job(job)
        asset, run = self._load(job)

        if asset is None or run is None:
            logger.info(f"Job {job.job_id}: asset or run no longer exists, discarding")
            return DISCARDED
        if run.reset_epoch != job.reset_epoch:
            logger.info(f"Job {job.job_id}: epoch {job.reset_epoch} != {run.reset_epoch}, discarding")
            return DISCARDED
        if asset.status != "queued":
            logger.info(f"Job {job.job_id}: asset {asset.asset_id} is {asset.status}, discarding")
            return DISCARDED

        state = self._state(run, asset.step_index)

        if job.is_auto_retry and not state.auto_retry_enabled:
            self._park(
                asset,
                {"code": "AUTO_RETRY_DISABLED", "message": "Auto-retry stopped before the scheduled attempt"},
                "auto_retry_cancelled",
            )
            return CANCELLED

        if asset.attempt_count >= state.max_attempts or run.total_attempts >= self.policy.max_attempts_per_run:
            error = BudgetExhaustedError(
                f"Attempt budget exhausted for asset {asset.asset_id}",
                {
                    "asset_attempts": asset.attempt_count,
                    "max_attempts": state.max_attempts,
                    "run_attempts": run.total_attempts,
                },
            )
            self._park(asset, {"code": error.code, "message": error.message, **error.details}, "budget_exhausted")
            return BLOCKED

        if asset.kind == OPPOSITE:
            try:
                anchor = resolve_anchor(db, asset)
            except DependencyNotReadyError as e:
                logger.warning(f"Job {job.job_id}: {e.message}")
                on_asset_terminal(db, job.asset_id)
                return BLOCKED
            if anchor is not None:
                asset.anchor_ref = anchor.anchor_ref
                db.flush()

        step = phases.get_step(asset.step_index)
        render_payload = {
            "run_id": run.run_id,
            "asset_id": str(asset.asset_id),
            "step_index": asset.step_index,
            "kind": asset.kind,
            "base_prompt": asset.base_prompt,
            "anchor_ref": asset.anchor_ref,
            "retry_delta": job.payload.get("retry_delta"),
        }
        judge_context = {
            "step": step.name,
            "kind": asset.kind,
            "space": asset.space.name if asset.space is not None else None,
            "anchor_ref": asset.anchor_ref,
        }
        calibration_hint = run.calibration_hint

        attempt_index = self._begin_attempt(job, asset, state)
        if attempt_index is None:
            return DISCARDED

        generated: Dict[str, Any] = {}
        try:
            generated = self.renderer.execute(render_payload)
            judged = self.judge.execute(
                {
                    "asset_id": str(job.asset_id),
                    "artifact_ref": generated["artifact_ref"],
                    "category": step.category,
                    "context": judge_context,
                    "calibration_hint": calibration_hint,
                }
            )
        except GenerationServiceError as e:
            logger.warning(f"Job {job.job_id}: generation service error: {e.message}")
            return self._fail_attempt(job, attempt_index, e, generated)

        verdict: QAVerdict = judged["verdict"]

        # Re-read counters: an operator may have stopped auto-retry mid-flight
        db.expire_all()
        run = db.query(PipelineRun).filter(PipelineRun.run_id == job.run_id).first()
        if run is None or run.reset_epoch != job.reset_epoch:
            db.rollback()
            logger.info(f"Job {job.job_id}: run restarted during generation, discarding result")
            return DISCARDED
        state = self._state(run, step.index)
        decision = evaluate(
            verdict,
            RetryState(attempt_index, state.max_attempts, state.auto_retry_enabled),
            run.total_attempts,
            self.policy,
        )
        return self._persist(job, attempt_index, generated, verdict, decision)

    def _park(self, asset: GenerationAsset, reason: Dict[str, Any], event_type: str) -> None:
        """Move a queued asset to blocked before any attempt is spent."""
        asset.mark("blocked", qa_status="blocked_for_human", block_reason=reason)
        record_event(self.db, asset.run_id, asset.step_index, event_type, reason["message"], asset_id=asset.asset_id)
        self.db.commit()
        logger.info(f"Asset {asset.asset_id} blocked: {reason['code']}")
        on_asset_terminal(self.db, asset.asset_id)

    def _begin_attempt(self, job: JobTicket, asset: GenerationAsset, state: StepRetryState) -> Optional[int]:
        """
        Fence, then atomically consume one step and one run attempt.

        Returns:
            The new attempt index, or None if the job must be discarded
        """
        db = self.db
        if not phases.fence(db, job.run_id, job.reset_epoch):
            db.rollback()
            logger.info(f"Job {job.job_id}: run restarted before attempt, discarding")
            return None

        now = datetime.utcnow()
        rows = (
            db.query(GenerationAsset)
            .filter(
                GenerationAsset.asset_id == asset.asset_id,
                GenerationAsset.status == "queued",
                GenerationAsset.attempt_count < state.max_attempts,
            )
            .update(
                {
                    GenerationAsset.attempt_count: GenerationAsset.attempt_count + 1,
                    GenerationAsset.status: "generating",
                    GenerationAsset.last_event_at: now,
                },
                synchronize_session=False,
            )
        )
        if rows == 0:
            db.rollback()
            logger.info(f"Job {job.job_id}: asset {asset.asset_id} changed before attempt, discarding")
            return None

        rows = (
            db.query(PipelineRun)
            .filter(
                PipelineRun.run_id == job.run_id,
                PipelineRun.total_attempts < self.policy.max_attempts_per_run,
            )
            .update({PipelineRun.total_attempts: PipelineRun.total_attempts + 1}, synchronize_session=False)
        )
        if rows == 0:
            db.rollback()
            error = BudgetExhaustedError("Run attempt budget exhausted", {"scope": "run"})
            self._park(asset, {"code": error.code, "message": error.message, **error.details}, "budget_exhausted")
            return None

        db.refresh(asset)
        asset.mark("generating")
        # Step counter only moves up; concurrent workers on the step race here
        db.query(StepRetryState).filter(
            StepRetryState.run_id == job.run_id,
            StepRetryState.step_index == asset.step_index,
            StepRetryState.attempt_count < asset.attempt_count,
        ).update({StepRetryState.attempt_count: asset.attempt_count}, synchronize_session=False)
        state.status = "running"
        record_event(
            db,
            asset.run_id,
            asset.step_index,
            "generation_started",
            f"Attempt {asset.attempt_count}/{state.max_attempts}",
            asset_id=asset.asset_id,
        )
        db.commit()
        return asset.attempt_count

    def _fenced_asset(self, job: JobTicket) -> Optional[GenerationAsset]:
        """Fence the run and return the asset if it is still ours to write."""
        db = self.db
        if not phases.fence(db, job.run_id, job.reset_epoch):
            db.rollback()
            logger.info(f"Job {job.job_id}: epoch {job.reset_epoch} is stale, discarding result")
            return None

        asset = db.query(GenerationAsset).filter(GenerationAsset.asset_id == job.asset_id).first()
        if asset is None or asset.status != "generating":
            db.rollback()
            logger.info(f"Job {job.job_id}: asset no longer generating, discarding result")
            return None
        return asset

    def _persist(
        self,
        job: JobTicket,
        attempt_index: int,
        generated: Dict[str, Any],
        verdict: QAVerdict,
        decision: RetryDecision,
    ) -> str:
        """Final write of a judged attempt, under the epoch fence."""
        db = self.db
        asset = self._fenced_asset(job)
        if asset is None:
            return DISCARDED

        run = db.query(PipelineRun).filter(PipelineRun.run_id == job.run_id).first()
        state = self._state(run, asset.step_index)
        artifact_ref = generated["artifact_ref"]
        record = verdict.to_record()

        db.add(
            Attempt(
                asset_id=asset.asset_id,
                run_id=asset.run_id,
                step_index=asset.step_index,
                attempt_index=attempt_index,
                prompt=generated.get("prompt"),
                parameters=generated.get("parameters"),
                model=generated.get("model"),
                output_ref=artifact_ref,
                qa_verdict=record,
                decision=decision.action,
                reset_epoch=job.reset_epoch,
            )
        )
        state.last_qa_result = record
        state.last_retry_delta = decision.retry_delta.model_dump() if decision.retry_delta else None

        if decision.action == "proceed":
            asset.mark("needs_review", output_ref=artifact_ref, qa_status="passed", qa_result=record, block_reason=None)
            state.status = "qa_pass"
        elif decision.action == "retry":
            asset.mark("queued", output_ref=artifact_ref, qa_status="failed", qa_result=record)
            enqueue_job(
                db,
                run,
                asset,
                retry_delta=decision.retry_delta,
                delay_seconds=decision.delay_seconds or 0,
                is_auto_retry=True,
            )
            state.status = "qa_fail"
        else:
            qa_status = "needs_human" if verdict.recommended_action == "needs_human" else "blocked_for_human"
            asset.mark(
                "blocked",
                output_ref=artifact_ref,
                qa_status=qa_status,
                qa_result=record,
                block_reason={"code": decision.code or "BLOCKED_FOR_HUMAN", "message": decision.reason},
            )
            state.status = "blocked_for_human"

        record_event(
            db,
            asset.run_id,
            asset.step_index,
            "attempt_judged",
            decision.reason,
            asset_id=asset.asset_id,
            payload={
                "attempt": attempt_index,
                "decision": decision.action,
                "score": verdict.score,
                "delay_seconds": decision.delay_seconds,
            },
        )
        db.commit()

        logger.info(f"Asset {asset.asset_id} attempt {attempt_index}: {decision.action} ({decision.reason})")
        if decision.action != "retry":
            on_asset_terminal(db, job.asset_id)
        return DONE

    def _fail_attempt(
        self,
        job: JobTicket,
        attempt_index: int,
        error: GenerationServiceError,
        generated: Dict[str, Any],
    ) -> str:
        """Record an upstream failure and retry or terminate per policy."""
        db = self.db
        db.rollback()
        asset = self._fenced_asset(job)
        if asset is None:
            return DISCARDED

        run = db.query(PipelineRun).filter(PipelineRun.run_id == job.run_id).first()
        state = self._state(run, asset.step_index)
        decision = evaluate_generation_failure(
            RetryState(asset.attempt_count, state.max_attempts, state.auto_retry_enabled),
            run.total_attempts,
            error.retryable,
            self.policy,
        )

        db.add(
            Attempt(
                asset_id=asset.asset_id,
                run_id=asset.run_id,
                step_index=asset.step_index,
                attempt_index=attempt_index,
                prompt=generated.get("prompt"),
                parameters=generated.get("parameters"),
                model=generated.get("model"),
                output_ref=generated.get("artifact_ref"),
                decision="error",
                error=error.message,
                reset_epoch=job.reset_epoch,
            )
        )

        reason = {"code": error.code, "message": error.message, **error.details, "decision": decision.code}
        if decision.should_retry:
            asset.mark("queued", block_reason=reason)
            enqueue_job(
                db,
                run,
                asset,
                retry_delta=decision.retry_delta or RetryDelta(),
                delay_seconds=decision.delay_seconds or 0,
                is_auto_retry=True,
            )
            outcome = DONE
        elif decision.code in _HUMAN_BLOCK_CODES:
            asset.mark("blocked", qa_status="blocked_for_human", block_reason=reason)
            state.status = "blocked_for_human"
            outcome = BLOCKED
        else:
            asset.mark("failed", block_reason=reason)
            outcome = DONE

        record_event(
            db,
            asset.run_id,
            asset.step_index,
            "attempt_error",
            f"{error.message} -> {decision.action}",
            asset_id=asset.asset_id,
            payload={"attempt": attempt_index, "retryable": error.retryable, "decision": decision.action},
        )
        db.commit()

        if not decision.should_retry:
            on_asset_terminal(db, job.asset_id)
        return outcome
