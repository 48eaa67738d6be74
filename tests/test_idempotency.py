"""Tests for the idempotency guard."""

from datetime import datetime, timedelta

import pytest

from app.errors import DuplicateInProgressError, InvalidInputError
from app.models.asset import GenerationAsset
from app.models.job import Job
from app.services.idempotency import STALE_SUPERSEDED, check_admission, claim, is_stale
from app.services.orchestrator import start_generation


@pytest.fixture
def renders_run(make_run, make_space):
    run = make_run(step=5, phase="renders_pending")
    return run, make_space(run)


def test_double_start_enqueues_one_job(test_db, renders_run, make_asset):
    """Test that two StartGeneration calls produce exactly one job."""
    run, space = renders_run
    asset = make_asset(run, 5, space=space)

    first = start_generation(test_db, asset.asset_id)
    second = start_generation(test_db, asset.asset_id)

    assert first.accepted and not first.idempotent
    assert second.accepted and second.idempotent
    assert second.status == "queued"
    assert test_db.query(Job).count() == 1
    assert run.phase == "renders_in_progress"


def test_locked_asset_rejected(test_db, renders_run, make_asset):
    """Test that approved assets are immutable."""
    run, space = renders_run
    asset = make_asset(run, 5, space=space, status="locked_approved", output_ref="artifact://done")

    with pytest.raises(InvalidInputError):
        check_admission(test_db, asset)


def test_inflight_sibling_rejected(test_db, renders_run, make_asset):
    """Test that a second asset for the same space and kind is refused while one is in flight."""
    run, space = renders_run
    busy = make_asset(run, 5, space=space, status="generating")
    duplicate = make_asset(run, 5, space=space)

    with pytest.raises(DuplicateInProgressError) as exc_info:
        check_admission(test_db, duplicate)

    assert exc_info.value.existing_id == str(busy.asset_id)
    assert exc_info.value.to_dict()["existing_id"] == str(busy.asset_id)


def test_stale_sibling_superseded_with_force(test_db, renders_run, make_asset):
    """Test that force supersedes an in-flight asset past the staleness threshold."""
    run, space = renders_run
    stale = make_asset(
        run,
        5,
        space=space,
        status="generating",
        last_event_at=datetime.utcnow() - timedelta(hours=2),
    )
    replacement = make_asset(run, 5, space=space)

    assert is_stale(stale)
    assert check_admission(test_db, replacement, force=True) is None
    assert stale.status == "failed"
    assert stale.block_reason["code"] == STALE_SUPERSEDED


def test_fresh_sibling_not_superseded_with_force(test_db, renders_run, make_asset):
    """Test that force does not touch recent in-flight work."""
    run, space = renders_run
    make_asset(run, 5, space=space, status="queued")
    replacement = make_asset(run, 5, space=space)

    with pytest.raises(DuplicateInProgressError):
        check_admission(test_db, replacement, force=True)


def test_claim_lost_race_is_idempotent(test_db, renders_run, make_asset):
    """Test that a claim matching zero rows returns the in-flight handle."""
    run, space = renders_run
    asset = make_asset(run, 5, space=space)

    # Another caller won between check and claim
    test_db.query(GenerationAsset).filter(GenerationAsset.asset_id == asset.asset_id).update(
        {GenerationAsset.status: "queued"}, synchronize_session=False
    )
    test_db.commit()

    admission = claim(test_db, asset)

    assert admission.idempotent
    assert admission.status == "queued"


def test_claim_sets_anchor_and_mirrors_space(test_db, renders_run, make_asset):
    """Test a successful claim."""
    run, space = renders_run
    asset = make_asset(run, 5, space=space, block_reason={"code": "OLD"})

    admission = claim(test_db, asset, anchor_ref="artifact://anchor")
    test_db.commit()

    assert not admission.idempotent
    assert asset.status == "queued"
    assert asset.anchor_ref == "artifact://anchor"
    assert asset.block_reason is None
    assert space.primary_status == "queued"
