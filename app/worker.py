"""Background worker for processing generation jobs."""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional, Set

import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.models.asset import GenerationAsset
from app.models.job import Job
from app.services.generation_task import GenerationTask
from app.services.llm_client import LLMClient
from app.services.orchestrator import on_asset_terminal

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

WORKER_ERROR = "WORKER_ERROR"


class Worker:
    """Polls the jobs table and runs each claimed job on a thread pool."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        llm_client: Optional[LLMClient] = None,
        pool_size: Optional[int] = None,
    ):
        """Initialize worker."""
        self.session_factory = session_factory
        self.llm_client = llm_client or LLMClient()
        self.poll_interval = settings.WORKER_POLL_INTERVAL
        self.max_retries = settings.MAX_JOB_RETRIES
        self.pool_size = pool_size or settings.WORKER_POOL_SIZE
        self.executor = ThreadPoolExecutor(max_workers=self.pool_size, thread_name_prefix="generation")
        self._inflight: Set[Future] = set()

    def wait_for_database(self, max_wait: int = 60) -> bool:
        """Block until the jobs table exists (migrations may still be running)."""
        waited = 0
        while waited < max_wait:
            db = self.session_factory()
            try:
                db.execute(sqlalchemy.text("SELECT 1 FROM jobs LIMIT 1"))
                logger.info("Database is ready, starting worker loop")
                return True
            except SQLAlchemyError as e:
                logger.info(f"Waiting for database ({waited}s): {e.__class__.__name__}")
                time.sleep(2)
                waited += 2
            finally:
                db.close()

        logger.error(f"Database not ready after {max_wait} seconds, starting anyway...")
        return False

    def run(self, stop_event=None):
        """Main worker loop.

        Args:
            stop_event: Optional threading.Event to signal worker to stop
        """
        logger.info("Worker started - waiting for database to be ready...")
        self.wait_for_database()

        while True:
            if stop_event and stop_event.is_set():
                logger.info("Worker stop signal received")
                break

            try:
                claimed = self.poll_once()
                if not claimed:
                    time.sleep(self.poll_interval)
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                time.sleep(self.poll_interval)

        self.executor.shutdown(wait=True)

    def poll_once(self) -> int:
        """Claim due jobs up to free pool capacity and submit them. Returns jobs submitted."""
        submitted = 0
        while len(self._inflight) < self.pool_size:
            job_id = self.claim_next_job()
            if job_id is None:
                break
            future = self.executor.submit(self.process_job, job_id)
            self._inflight.add(future)
            future.add_done_callback(self._on_done)
            submitted += 1
        return submitted

    def _on_done(self, future: Future):
        """Completion callback for a submitted job."""
        self._inflight.discard(future)
        error = future.exception()
        if error is not None:
            logger.error(f"Generation task crashed: {error}", exc_info=error)

    def claim_next_job(self) -> Optional[str]:
        """Mark the next due queued job running and return its id."""
        db = self.session_factory()
        try:
            job = (
                db.query(Job)
                .filter(Job.status == "queued", Job.run_at <= datetime.utcnow())
                .order_by(Job.run_at, Job.created_at)
                .with_for_update(skip_locked=True)
                .first()
            )
            if job is None:
                db.rollback()
                return None
            job_id = job.job_id
            job.status = "running"
            db.commit()
            return job_id
        finally:
            db.close()

    def _set_job_status(self, db: Session, job_id, status: str, **fields) -> None:
        values = {Job.status: status}
        for name, value in fields.items():
            values[getattr(Job, name)] = value
        db.query(Job).filter(Job.job_id == job_id).update(values, synchronize_session=False)
        db.commit()

    def process_job(self, job_id) -> Optional[str]:
        """Process a single job in its own session."""
        db = self.session_factory()
        try:
            job = db.query(Job).filter(Job.job_id == job_id).first()
            if job is None or job.status != "running":
                return None

            logger.info(f"Processing job {job.job_id} (agent: {job.agent}, asset: {job.asset_id})")

            try:
                outcome = GenerationTask(db, self.llm_client).run(job)
            except Exception as e:
                logger.error(f"Job {job_id} failed: {e}", exc_info=True)
                db.rollback()
                self._handle_failure(db, job_id, e)
                return "failed"

            status = outcome if outcome in ("discarded", "cancelled") else "done"
            self._set_job_status(db, job_id, status)
            logger.info(f"Job {job_id} finished: {outcome}")
            return outcome
        finally:
            db.close()

    def _handle_failure(self, db: Session, job_id, error: Exception):
        """Requeue a crashed job, or fail it and its asset after max retries."""
        job = db.query(Job).filter(Job.job_id == job_id).first()
        if job is None:
            return

        retries = (job.retries or 0) + 1
        asset = db.query(GenerationAsset).filter(GenerationAsset.asset_id == job.asset_id).first()

        if retries >= self.max_retries:
            self._set_job_status(db, job_id, "failed", retries=retries, last_error=str(error))
            if asset is not None and asset.status in ("queued", "generating"):
                asset.mark("failed", block_reason={"code": WORKER_ERROR, "message": str(error)})
                db.commit()
                on_asset_terminal(db, asset.asset_id)
            logger.error(f"Job {job_id} failed after {retries} retries")
        else:
            if asset is not None and asset.status == "generating":
                asset.mark("queued")
                db.commit()
            self._set_job_status(db, job_id, "queued", retries=retries, last_error=str(error))
            logger.warning(f"Job {job_id} retry {retries}/{self.max_retries}")


def worker_loop(stop_event=None):
    """Run worker loop (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal worker to stop
    """
    worker = Worker()
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    worker = Worker()
    worker.run()


if __name__ == "__main__":
    main()
