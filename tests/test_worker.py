"""Tests for the job worker."""

import pytest
from sqlalchemy.orm import sessionmaker

from app.models.asset import GenerationAsset
from app.models.job import Job
from app.services import orchestrator
from app.worker import WORKER_ERROR, Worker


@pytest.fixture
def worker(test_db, fake_llm):
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=test_db.get_bind())
    w = Worker(session_factory=session_factory, llm_client=fake_llm, pool_size=1)
    yield w
    w.executor.shutdown(wait=True)


@pytest.fixture
def queued_asset(test_db, make_run, make_space, make_asset):
    run = make_run(step=5, phase="renders_pending")
    asset = make_asset(run, 5, space=make_space(run))
    orchestrator.start_generation(test_db, asset.asset_id)
    return asset


def _reload(test_db, model, **filters):
    test_db.expire_all()
    return test_db.query(model).filter_by(**filters).one()


def test_claim_and_process_job(test_db, worker, queued_asset):
    """Test a job claimed and run to completion."""
    job_id = worker.claim_next_job()
    assert job_id is not None
    assert _reload(test_db, Job, job_id=job_id).status == "running"

    outcome = worker.process_job(job_id)

    assert outcome == "done"
    assert _reload(test_db, Job, job_id=job_id).status == "done"
    assert _reload(test_db, GenerationAsset, asset_id=queued_asset.asset_id).status == "needs_review"


def test_claim_returns_none_when_idle(worker):
    """Test polling with nothing due."""
    assert worker.claim_next_job() is None
    assert worker.poll_once() == 0


def test_stale_job_marked_discarded(test_db, worker, queued_asset):
    """Test that a job from an older epoch is discarded."""
    job = test_db.query(Job).one()
    job.reset_epoch = -1
    test_db.commit()

    job_id = worker.claim_next_job()
    outcome = worker.process_job(job_id)

    assert outcome == "discarded"
    assert _reload(test_db, Job, job_id=job_id).status == "discarded"


def test_crash_requeues_job(test_db, worker, fake_llm, queued_asset):
    """Test that an unexpected error requeues the job and its asset."""
    fake_llm.image_error = RuntimeError("renderer crashed")

    job_id = worker.claim_next_job()
    outcome = worker.process_job(job_id)

    assert outcome == "failed"
    job = _reload(test_db, Job, job_id=job_id)
    assert job.status == "queued"
    assert job.retries == 1
    assert job.last_error == "renderer crashed"
    assert _reload(test_db, GenerationAsset, asset_id=queued_asset.asset_id).status == "queued"


def test_crash_after_max_retries_fails_asset(test_db, worker, fake_llm, queued_asset):
    """Test that the last allowed crash fails the job and the asset."""
    fake_llm.image_error = RuntimeError("renderer crashed")
    job = test_db.query(Job).one()
    job.retries = worker.max_retries - 1
    test_db.commit()

    job_id = worker.claim_next_job()
    worker.process_job(job_id)

    assert _reload(test_db, Job, job_id=job_id).status == "failed"
    asset = _reload(test_db, GenerationAsset, asset_id=queued_asset.asset_id)
    assert asset.status == "failed"
    assert asset.block_reason["code"] == WORKER_ERROR
