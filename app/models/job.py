"""Job model for worker queue."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base, JSONDoc


class Job(Base):
    """Job represents one queued generate -> judge -> decide task for an asset."""

    __tablename__ = "jobs"

    job_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    asset_id = Column(UUID(as_uuid=True), nullable=False)
    step_index = Column(Integer, nullable=False)
    agent = Column(Text, nullable=False, default="generate")
    status = Column(Text, nullable=False)  # 'queued', 'running', 'done', 'failed', 'discarded', 'cancelled'
    payload = Column(JSONDoc)  # {'retry_delta': {...}} for retries
    reset_epoch = Column(Integer, nullable=False)
    is_auto_retry = Column(Boolean, nullable=False, default=False)
    run_at = Column(DateTime, default=datetime.utcnow)
    retries = Column(Integer, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_jobs_status", "status"),
        Index("idx_jobs_run_id", "run_id"),
        {"schema": None},
    )
