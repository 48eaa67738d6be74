"""Pipeline run model."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.orm.collections import attribute_keyed_dict

from app.database import Base, JSONDoc


class PipelineRun(Base):
    """One end-to-end job moving a source image through the ordered steps."""

    __tablename__ = "pipeline_runs"

    run_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_ref = Column(Text, nullable=False)
    phase = Column(Text, nullable=False, default="upload")
    current_step = Column(Integer, nullable=False, default=0)
    status = Column(Text, nullable=False, default="active")  # 'active', 'blocked_for_human', 'completed', 'failed'
    reset_epoch = Column(Integer, nullable=False, default=0)
    total_attempts = Column(Integer, nullable=False, default=0)
    calibration_hint = Column(JSONDoc)  # Opaque, forwarded to the judge
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # step_index -> row
    step_outputs = relationship(
        "StepOutput",
        collection_class=attribute_keyed_dict("step_index"),
        cascade="all, delete-orphan",
    )
    step_retry_state = relationship(
        "StepRetryState",
        collection_class=attribute_keyed_dict("step_index"),
        cascade="all, delete-orphan",
    )
