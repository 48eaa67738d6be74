"""Pipeline event log model."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base, JSONDoc


class PipelineEvent(Base):
    """Progress/audit event for a run step."""

    __tablename__ = "pipeline_events"

    event_pk = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    step_index = Column(Integer, nullable=False)
    asset_id = Column(UUID(as_uuid=True))
    type = Column(Text, nullable=False)
    message = Column(Text)
    payload = Column(JSONDoc)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_events_run_step", "run_id", "step_index"), {"schema": None})
