"""Retry controller: decides retry / block_for_human / proceed from a QA verdict.

Eligibility checks run in a fixed order and the first match wins. Regeneration
adjustments come from a closed vocabulary: the judge's free-text instruction
is kept for audit only and never reaches the next generation prompt.
"""

import logging
import random
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import QAParseError
from app.models.run import PipelineRun
from app.models.step import StepRetryState
from app.schemas.qa import QACategory, QAVerdict
from app.schemas.retry import RetryDecision, RetryDelta
from app.services import phases
from app.services.events import record_event
from app.services.qa_contract import parse_judge_output, verdict_for_parse_failure

logger = logging.getLogger(__name__)

MAX_SEED = 2**31 - 2

PROMPT_DELTA_CONSTRAINT = (
    "Follow the reference composition strictly and correct the defects reported for the previous attempt."
)

SETTINGS_DELTA = {"temperature": 0.3, "guidance_scale": 12}

_GEOMETRY = "CRITICAL: Preserve ALL wall angles exactly as shown. Do NOT straighten angled walls."
_SCALE = "CRITICAL: Maintain exact scale and proportions from floor plan dimensions."

# Closed code -> constraint sentence table
CATEGORY_CONSTRAINTS: Dict[str, str] = {
    QACategory.GEOMETRY_DISTORTION.value: _GEOMETRY,
    QACategory.WALL_RECTIFICATION.value: _GEOMETRY,
    QACategory.SCALE_MISMATCH.value: _SCALE,
    QACategory.FURNITURE_MISMATCH.value: _SCALE,
    QACategory.STYLE_INCONSISTENCY.value: "CRITICAL: Match the design style exactly as specified in the style reference.",
    QACategory.MISSING_FURNISHINGS.value: "CRITICAL: Include all required furniture items for this room type.",
    QACategory.DUPLICATED_OBJECTS.value: "CRITICAL: Render every object exactly once. Do NOT duplicate furniture or fixtures.",
    QACategory.WRONG_ROOM_TYPE.value: "CRITICAL: Render the room as the declared room type only.",
    QACategory.MISSING_SPACE.value: "CRITICAL: Include every space shown in the floor plan.",
    QACategory.PERSPECTIVE_ERROR.value: "CRITICAL: Keep a physically plausible eye-level perspective with vertical walls.",
    QACategory.COLOR_INCONSISTENCY.value: "CRITICAL: Keep materials and colors identical to the reference images.",
    QACategory.SEAM_ARTIFACTS.value: "CRITICAL: Produce continuous edges with no visible seams or stitching artifacts.",
    QACategory.RESOLUTION_MISMATCH.value: "CRITICAL: Output at the requested resolution and aspect ratio.",
}

CHANGE_NOTES: Dict[str, str] = {
    _GEOMETRY: "Added geometry preservation constraint",
    _SCALE: "Added scale preservation constraint",
}


class RetryPolicy(BaseModel):
    """Process-wide retry limits; built once from settings."""

    model_config = ConfigDict(frozen=True)

    max_attempts_per_step: int = 5
    max_attempts_per_run: int = 20
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    blocking_severities: Tuple[str, ...] = ("critical",)
    blocking_suggestion_types: Tuple[str, ...] = ("manual_review",)
    min_confidence: float = 0.3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts_per_step=settings.MAX_ATTEMPTS_PER_STEP,
            max_attempts_per_run=settings.MAX_ATTEMPTS_PER_RUN,
            base_delay_seconds=settings.BASE_RETRY_DELAY_SECONDS,
            max_delay_seconds=settings.MAX_RETRY_DELAY_SECONDS,
            blocking_severities=tuple(settings.BLOCKING_SEVERITIES),
            blocking_suggestion_types=tuple(settings.BLOCKING_SUGGESTION_TYPES),
            min_confidence=settings.MIN_CONFIDENCE_FOR_AUTO_RETRY,
        )


@lru_cache(maxsize=1)
def get_retry_policy() -> RetryPolicy:
    """Return the process-wide policy."""
    return RetryPolicy.from_settings()


@dataclass
class RetryState:
    """Counters the controller evaluates against."""

    attempt_count: int
    max_attempts: int
    auto_retry_enabled: bool = True

    @classmethod
    def from_row(cls, row: StepRetryState) -> "RetryState":
        return cls(row.attempt_count, row.max_attempts, row.auto_retry_enabled)


def backoff_delay(attempt: int, policy: Optional[RetryPolicy] = None) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    policy = policy or get_retry_policy()
    delay = policy.base_delay_seconds * (2 ** max(attempt - 1, 0))
    return min(delay, policy.max_delay_seconds)


def _new_seed() -> int:
    return random.randint(0, MAX_SEED)


def build_retry_delta(verdict: QAVerdict) -> RetryDelta:
    """
    Map a failing verdict to a bounded regeneration adjustment.

    Args:
        verdict: Failing, contract-checked verdict

    Returns:
        RetryDelta drawn from the closed vocabulary
    """
    suggestion = verdict.retry_suggestion
    changes: List[str] = []
    prompt_adjustments: List[str] = []
    settings_adjustments: Dict[str, Any] = {}
    input_modified = False
    audit = {"type": suggestion.type, "instruction": suggestion.instruction}

    if suggestion.type == "prompt_delta":
        prompt_adjustments.append(PROMPT_DELTA_CONSTRAINT)
        changes.append("Applied prompt constraint")
    elif suggestion.type == "settings_delta":
        settings_adjustments.update(SETTINGS_DELTA)
        changes.append("Reduced creativity (temperature=0.3, guidance=12)")
    elif suggestion.type == "seed_change":
        seed = _new_seed()
        changes.append(f"Changed seed to {seed}")
        return RetryDelta(changes_made=changes, new_seed=seed, suggestion_applied=audit)
    elif suggestion.type == "input_change":
        input_modified = True
        changes.append("Flagged for input modification")
    else:
        seed = _new_seed()
        changes.append(f"Generic retry with new seed {seed}")
        return RetryDelta(changes_made=changes, new_seed=seed, suggestion_applied=audit)

    codes = [issue.category.value for issue in verdict.issues] + list(verdict.failure_categories)
    for code in codes:
        sentence = CATEGORY_CONSTRAINTS.get(code)
        if sentence and sentence not in prompt_adjustments:
            prompt_adjustments.append(sentence)
            changes.append(CHANGE_NOTES.get(sentence, f"Added constraint for {code}"))

    return RetryDelta(
        changes_made=changes,
        new_seed=_new_seed(),
        prompt_adjustments=prompt_adjustments,
        settings_adjustments=settings_adjustments,
        input_modified=input_modified,
        suggestion_applied=audit,
    )


def _block(reason: str, code: str) -> RetryDecision:
    return RetryDecision(action="block_for_human", reason=reason, code=code)


def _budget_check(state: RetryState, total_run_attempts: int, policy: RetryPolicy) -> Optional[RetryDecision]:
    """Checks shared by QA and upstream-failure evaluation."""
    if not state.auto_retry_enabled:
        return _block("Auto-retry is disabled for this step", "AUTO_RETRY_DISABLED")

    max_attempts = min(state.max_attempts, policy.max_attempts_per_step)
    if state.attempt_count >= max_attempts:
        return _block(
            f"Max attempts reached ({state.attempt_count}/{max_attempts})",
            "STEP_BUDGET_EXHAUSTED",
        )

    if total_run_attempts >= policy.max_attempts_per_run:
        return _block(
            f"Total retry budget exhausted ({total_run_attempts}/{policy.max_attempts_per_run})",
            "RUN_BUDGET_EXHAUSTED",
        )
    return None


def evaluate(
    verdict: QAVerdict,
    state: RetryState,
    total_run_attempts: int,
    policy: Optional[RetryPolicy] = None,
) -> RetryDecision:
    """
    Decide what happens after a judged attempt.

    Args:
        verdict: Contract-checked verdict for the attempt
        state: Attempt counters for the asset/step
        total_run_attempts: Attempts consumed across the whole run
        policy: Retry limits (process-wide policy by default)

    Returns:
        RetryDecision with action proceed, block_for_human or retry
    """
    policy = policy or get_retry_policy()

    if verdict.passed:
        return RetryDecision(action="proceed", reason="QA passed")

    blocked = _budget_check(state, total_run_attempts, policy)
    if blocked:
        return blocked

    severities = [issue.severity for issue in verdict.issues if issue.severity in policy.blocking_severities]
    if severities:
        return _block(f"Severity '{severities[0]}' requires human review", "BLOCKING_SEVERITY")

    suggestion_type = verdict.retry_suggestion.type
    if suggestion_type in policy.blocking_suggestion_types:
        return _block(f"Suggestion type '{suggestion_type}' requires human review", "BLOCKING_SUGGESTION")

    if verdict.confidence < policy.min_confidence:
        return _block(f"Low QA confidence ({verdict.confidence}) requires human review", "LOW_CONFIDENCE")

    next_attempt = state.attempt_count + 1
    return RetryDecision(
        action="retry",
        reason=f"Auto-retry eligible (attempt {next_attempt}/{state.max_attempts})",
        retry_delta=build_retry_delta(verdict),
        delay_seconds=backoff_delay(next_attempt, policy),
    )


def evaluate_generation_failure(
    state: RetryState,
    total_run_attempts: int,
    retryable: bool,
    policy: Optional[RetryPolicy] = None,
) -> RetryDecision:
    """Decide whether an upstream generation error is retried."""
    policy = policy or get_retry_policy()

    if not retryable:
        return _block("Generation service rejected the request", "GENERATION_REJECTED")

    blocked = _budget_check(state, total_run_attempts, policy)
    if blocked:
        return blocked

    next_attempt = state.attempt_count + 1
    seed = _new_seed()
    return RetryDecision(
        action="retry",
        reason=f"Transient generation failure, retrying (attempt {next_attempt}/{state.max_attempts})",
        retry_delta=RetryDelta(changes_made=[f"Changed seed to {seed}"], new_seed=seed),
        delay_seconds=backoff_delay(next_attempt, policy),
    )


def get_or_create_step_state(db: Session, run: PipelineRun, step_index: int) -> StepRetryState:
    """Return the retry-state row for a step, creating it on first use."""
    state = (
        db.query(StepRetryState)
        .filter(StepRetryState.run_id == run.run_id, StepRetryState.step_index == step_index)
        .first()
    )
    if state is None:
        state = StepRetryState(
            run_id=run.run_id,
            step_index=step_index,
            attempt_count=0,
            max_attempts=get_retry_policy().max_attempts_per_step,
            auto_retry_enabled=settings.AUTO_RETRY_DEFAULT,
            status="pending",
        )
        db.add(state)
        db.flush()
    return state


def set_auto_retry(db: Session, run: PipelineRun, step_index: int, enabled: bool) -> StepRetryState:
    """Enable or stop scheduling of the next automatic attempt for a step."""
    phases.get_step(step_index)
    state = get_or_create_step_state(db, run, step_index)
    state.auto_retry_enabled = enabled
    record_event(
        db,
        run.run_id,
        step_index,
        "auto_retry_enabled" if enabled else "auto_retry_stopped",
        f"Auto-retry {'enabled' if enabled else 'stopped'} for step {step_index}",
    )
    db.commit()
    logger.info(f"Run {run.run_id} step {step_index}: auto-retry {'enabled' if enabled else 'stopped'}")
    return state


def _status_for(decision: RetryDecision) -> str:
    if decision.action == "proceed":
        return "qa_pass"
    if decision.action == "retry":
        return "qa_fail"
    return "blocked_for_human"


def evaluate_and_record(
    db: Session,
    run: PipelineRun,
    step_index: int,
    raw_verdict: Dict[str, Any],
) -> Tuple[RetryDecision, StepRetryState]:
    """
    Validate a submitted verdict, decide, and record the outcome on the step.

    Raises:
        QAParseError: If the verdict is malformed (the fallback failing verdict
            and blocked_for_human status are recorded first)
    """
    phases.get_step(step_index)
    state = get_or_create_step_state(db, run, step_index)

    try:
        verdict = parse_judge_output(raw_verdict)
    except QAParseError as e:
        fallback = verdict_for_parse_failure(e.message)
        state.last_qa_result = fallback.to_record()
        state.last_retry_delta = None
        state.status = "blocked_for_human"
        record_event(db, run.run_id, step_index, "qa_parse_failed", e.message)
        db.commit()
        raise

    decision = evaluate(verdict, RetryState.from_row(state), run.total_attempts)

    state.last_qa_result = verdict.to_record()
    state.last_retry_delta = decision.retry_delta.model_dump() if decision.retry_delta else None
    state.status = _status_for(decision)

    record_event(
        db,
        run.run_id,
        step_index,
        "qa_evaluated",
        decision.reason,
        payload={"decision": decision.action, "code": decision.code, "score": verdict.score},
    )
    db.commit()

    logger.info(f"Run {run.run_id} step {step_index}: QA decision {decision.action} ({decision.reason})")
    return decision, state
