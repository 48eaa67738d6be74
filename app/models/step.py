"""Per-step output and retry state, one row per (run, step_index)."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base, JSONDoc


class StepOutput(Base):
    """Result of a step: artifact reference(s) and approval flag."""

    __tablename__ = "step_outputs"

    output_pk = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    step_index = Column(Integer, nullable=False)
    artifact_ref = Column(Text)
    outputs = Column(JSONDoc)  # [{asset_id, space_id, kind, output_ref, status}]
    approved = Column(Boolean, nullable=False, default=False)
    approved_at = Column(DateTime)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("run_id", "step_index"), {"schema": None})


class StepRetryState(Base):
    """Retry bookkeeping for a step of a run."""

    __tablename__ = "step_retry_states"

    state_pk = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    step_index = Column(Integer, nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    auto_retry_enabled = Column(Boolean, nullable=False, default=True)
    last_qa_result = Column(JSONDoc)
    last_retry_delta = Column(JSONDoc)
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'running', 'qa_pass', 'qa_fail', 'blocked_for_human'
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (UniqueConstraint("run_id", "step_index"), {"schema": None})
