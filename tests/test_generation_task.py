"""Tests for the generate -> judge -> decide -> persist task."""

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from app.errors import GenerationServiceError
from app.models.asset import OPPOSITE, PRIMARY, Attempt, GenerationAsset
from app.models.job import Job
from app.models.step import StepRetryState
from app.schemas.asset import AssetCreateItem
from app.services import orchestrator, phases
from app.services.generation_task import BLOCKED, CANCELLED, DISCARDED, DONE, GenerationTask
from app.services.retry_controller import RetryPolicy, get_or_create_step_state, set_auto_retry


@pytest.fixture
def queued_primary(test_db, make_run, make_space, make_asset):
    """A step-5 Primary admitted into generation, with no Opposite."""
    run = make_run(step=5, phase="renders_pending")
    space = make_space(run, "Kitchen")
    asset = make_asset(run, 5, space=space, base_prompt="Eye-level kitchen render")
    orchestrator.start_generation(test_db, asset.asset_id)
    return run, asset


def _next_job(test_db, asset):
    return (
        test_db.query(Job)
        .filter(Job.asset_id == asset.asset_id, Job.status == "queued")
        .order_by(Job.created_at.desc())
        .first()
    )


def _run_next(test_db, fake_llm, asset):
    job = _next_job(test_db, asset)
    job.status = "running"
    test_db.commit()
    return GenerationTask(test_db, fake_llm, RetryPolicy()).run(job)


def test_pass_moves_asset_to_review(test_db, fake_llm, queued_primary):
    """Test a passing attempt."""
    run, asset = queued_primary

    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == DONE
    assert asset.status == "needs_review"
    assert asset.qa_status == "passed"
    assert asset.output_ref == "artifact://render/1"
    assert asset.attempt_count == 1
    assert run.total_attempts == 1
    assert run.phase == "renders_review"

    attempt = test_db.query(Attempt).one()
    assert attempt.decision == "proceed"
    assert attempt.reset_epoch == 0
    assert attempt.qa_verdict["pass"] is True


def test_render_references_source_and_anchor(test_db, fake_llm, queued_primary):
    """Test the reference images handed to the generator."""
    run, asset = queued_primary

    _run_next(test_db, fake_llm, asset)

    call = fake_llm.image_calls[0]
    assert call["reference_refs"] == ["artifact://uploads/floorplan.png"]
    assert call["prompt"] == "Eye-level kitchen render"


def test_failed_attempt_schedules_retry(test_db, fake_llm, fail_verdict, queued_primary):
    """Test that attempt 1 of 5 with a seed_change failure retries after 4s."""
    run, asset = queued_primary
    fake_llm.verdicts = [fail_verdict]

    before = datetime.utcnow()
    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == DONE
    assert asset.status == "queued"
    assert asset.qa_status == "failed"
    assert asset.attempt_count == 1

    retry_job = _next_job(test_db, asset)
    assert retry_job.is_auto_retry
    assert retry_job.payload["retry_delta"]["new_seed"] is not None
    assert (retry_job.run_at - before).total_seconds() >= 4

    state = test_db.query(StepRetryState).filter(StepRetryState.step_index == 5).one()
    assert state.status == "qa_fail"
    assert state.attempt_count == 1

    # The second attempt uses the new seed
    outcome = _run_next(test_db, fake_llm, asset)
    assert outcome == DONE
    assert asset.attempt_count == 2
    assert fake_llm.image_calls[1]["seed"] == retry_job.payload["retry_delta"]["new_seed"]
    assert asset.status == "needs_review"


def test_five_failures_block_for_human(test_db, fake_llm, fail_verdict, queued_primary):
    """Test that the fifth failed attempt blocks instead of retrying."""
    run, asset = queued_primary
    fake_llm.verdicts = [dict(fail_verdict) for _ in range(5)]

    for _ in range(5):
        assert _run_next(test_db, fake_llm, asset) == DONE

    assert asset.status == "blocked"
    assert asset.qa_status == "blocked_for_human"
    assert asset.block_reason["code"] == "STEP_BUDGET_EXHAUSTED"
    assert asset.attempt_count == 5
    assert run.total_attempts == 5
    assert run.status == "blocked_for_human"
    assert _next_job(test_db, asset) is None
    assert test_db.query(Attempt).count() == 5


def test_malformed_judge_output_blocks(test_db, fake_llm, queued_primary):
    """Test that unparseable judge output is never treated as a pass."""
    run, asset = queued_primary
    fake_llm.verdicts = ["Looks fine to me!"]

    _run_next(test_db, fake_llm, asset)

    assert asset.status == "blocked"
    assert asset.qa_status == "needs_human"
    assert asset.qa_result["confidence"] == 0.0


def test_restart_during_generation_discards_result(test_db, fake_llm, queued_primary):
    """Test that a restart mid-flight fences off the stale attempt."""
    run, asset = queued_primary
    asset_id = asset.asset_id
    fake_llm.on_generate = lambda: phases.restart(test_db, run, 3)

    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == DISCARDED
    assert run.reset_epoch == 1
    assert run.phase == "detect_spaces_pending"
    assert test_db.query(GenerationAsset).filter(GenerationAsset.asset_id == asset_id).count() == 0
    assert test_db.query(Attempt).count() == 0
    assert test_db.query(Job).count() == 0


def test_stale_epoch_job_discarded_before_generation(test_db, fake_llm, queued_primary):
    """Test that a job from an older epoch never calls the generator."""
    run, asset = queued_primary
    job = _next_job(test_db, asset)
    job.reset_epoch = -1
    test_db.commit()

    outcome = GenerationTask(test_db, fake_llm, RetryPolicy()).run(job)

    assert outcome == DISCARDED
    assert fake_llm.image_calls == []
    assert asset.status == "queued"


def test_auto_retry_stopped_cancels_scheduled_attempt(test_db, fake_llm, fail_verdict, queued_primary):
    """Test that stopping auto-retry cancels the pending automatic attempt."""
    run, asset = queued_primary
    fake_llm.verdicts = [fail_verdict]
    _run_next(test_db, fake_llm, asset)
    assert asset.status == "queued"

    set_auto_retry(test_db, run, 5, enabled=False)
    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == CANCELLED
    assert len(fake_llm.image_calls) == 1
    assert asset.status == "blocked"
    assert asset.block_reason["code"] == "AUTO_RETRY_DISABLED"


def test_run_budget_parks_asset(test_db, fake_llm, queued_primary):
    """Test that an exhausted run budget blocks before generating."""
    run, asset = queued_primary
    run.total_attempts = 20
    test_db.commit()

    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == BLOCKED
    assert fake_llm.image_calls == []
    assert asset.status == "blocked"
    assert asset.block_reason["code"] == "BudgetExhausted"


def test_transient_generation_error_retries(test_db, fake_llm, queued_primary):
    """Test that a retryable upstream failure schedules another attempt."""
    run, asset = queued_primary
    fake_llm.image_error = GenerationServiceError("Retryable error: 503", retryable=True, status=503)

    outcome = _run_next(test_db, fake_llm, asset)

    assert outcome == DONE
    assert asset.status == "queued"
    attempt = test_db.query(Attempt).one()
    assert attempt.decision == "error"
    assert "503" in attempt.error
    assert _next_job(test_db, asset).is_auto_retry


def test_rejected_generation_fails_asset(test_db, fake_llm, queued_primary):
    """Test that a non-retryable upstream failure terminates the asset."""
    run, asset = queued_primary
    fake_llm.image_error = GenerationServiceError("Request rejected: 400", retryable=False, status=400)

    _run_next(test_db, fake_llm, asset)

    assert asset.status == "failed"
    assert asset.block_reason["code"] == "GenerationServiceError"
    assert asset.block_reason["decision"] == "GENERATION_REJECTED"
    assert _next_job(test_db, asset) is None


def test_opposite_rechecks_primary_before_generating(test_db, fake_llm, make_run, make_space):
    """Test that a queued Opposite is blocked if its Primary went back to generation."""
    run = make_run(step=5, phase="renders_pending")
    space = make_space(run)
    assets = orchestrator.create_step_assets(test_db, run, 5, [AssetCreateItem(space_id=space.space_id, prompt="room")])
    primary = [a for a in assets if a.kind == PRIMARY][0]
    opposite = [a for a in assets if a.kind == OPPOSITE][0]

    primary.mark("needs_review", output_ref="artifact://primary/1")
    test_db.commit()
    orchestrator.start_generation(test_db, opposite.asset_id)
    assert opposite.status == "queued"

    # Primary is re-queued before the Opposite's job runs
    primary.mark("queued")
    test_db.commit()

    outcome = _run_next(test_db, fake_llm, opposite)

    assert outcome == BLOCKED
    assert fake_llm.image_calls == []
    assert opposite.status == "blocked"
    assert opposite.block_reason["primary_status"] == "queued"


def test_opposite_anchor_passed_to_generator(test_db, fake_llm, make_run, make_space):
    """Test that the Opposite renders against its Primary output."""
    run = make_run(step=5, phase="renders_pending")
    space = make_space(run)
    assets = orchestrator.create_step_assets(test_db, run, 5, [AssetCreateItem(space_id=space.space_id, prompt="room")])
    primary = [a for a in assets if a.kind == PRIMARY][0]
    opposite = [a for a in assets if a.kind == OPPOSITE][0]
    orchestrator.start_step(test_db, run, 5)

    _run_next(test_db, fake_llm, primary)
    assert primary.status == "needs_review"
    assert opposite.status == "queued"

    _run_next(test_db, fake_llm, opposite)

    call = fake_llm.image_calls[1]
    assert call["reference_refs"][-1] == primary.output_ref
    assert "CONSTRAINTS:" in call["prompt"]
    assert opposite.status == "needs_review"
    assert run.phase == "renders_review"


def test_restart_of_later_step_releases_earlier_asset(test_db, fake_llm, make_run, make_asset):
    """Test that an earlier-step regeneration cut off by a restart can be requested again."""
    run = make_run(step=5, phase="renders_review")
    styled = make_asset(run, 2, status="needs_review", output_ref="artifact://styled/1", base_prompt="Loft style")
    asset_id = styled.asset_id
    orchestrator.start_generation(test_db, asset_id)
    fake_llm.on_generate = lambda: phases.restart(test_db, run, 5)

    outcome = _run_next(test_db, fake_llm, styled)

    assert outcome == DISCARDED
    test_db.expire_all()
    styled = test_db.query(GenerationAsset).filter(GenerationAsset.asset_id == asset_id).one()
    assert styled.status == "needs_review"
    assert styled.output_ref == "artifact://styled/1"
    assert test_db.query(Job).count() == 0

    admission = orchestrator.start_generation(test_db, asset_id)

    assert not admission.idempotent
    assert styled.status == "queued"
    job = test_db.query(Job).one()
    assert job.reset_epoch == 1


def test_concurrent_workers_never_lower_step_counter(test_db, fake_llm, make_run, make_space, make_asset):
    """Test that a worker holding an older step counter cannot write it back over a newer one."""
    run = make_run(step=5, phase="renders_pending")
    kitchen = make_asset(run, 5, space=make_space(run, "Kitchen"))
    bedroom = make_asset(run, 5, space=make_space(run, "Bedroom"))
    orchestrator.start_generation(test_db, kitchen.asset_id)
    orchestrator.start_generation(test_db, bedroom.asset_id)
    state = get_or_create_step_state(test_db, run, 5)
    state.attempt_count = 2
    test_db.commit()

    other = sessionmaker(autocommit=False, autoflush=False, bind=test_db.get_bind())()
    try:
        job = other.query(Job).filter(Job.asset_id == bedroom.asset_id).one()
        job.status = "running"
        other.commit()
        held = (
            other.query(StepRetryState)
            .filter(StepRetryState.run_id == run.run_id, StepRetryState.step_index == 5)
            .one()
        )
        assert held.attempt_count == 2

        # Another worker advances the step while this one still holds the old row
        state.attempt_count = 4
        test_db.commit()

        outcome = GenerationTask(other, fake_llm, RetryPolicy()).run(job)
    finally:
        other.close()

    assert outcome == DONE
    test_db.expire_all()
    state = test_db.query(StepRetryState).filter(StepRetryState.step_index == 5).one()
    assert state.attempt_count == 4
    assert test_db.query(GenerationAsset).filter_by(asset_id=bedroom.asset_id).one().attempt_count == 1
