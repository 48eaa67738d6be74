"""Space model."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlalchemy.dialects.postgresql import UUID

from app.database import Base


class Space(Base):
    """A detected sub-unit of the source image (a room) receiving paired assets."""

    __tablename__ = "spaces"

    space_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    name = Column(Text, nullable=False)
    space_type = Column(Text)
    primary_status = Column(Text, nullable=False, default="pending")
    opposite_status = Column(Text, nullable=False, default="pending")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("idx_spaces_run_id", "run_id"), {"schema": None})
