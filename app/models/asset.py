"""Generation asset and attempt models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from app.database import Base, JSONDoc

PRIMARY = "primary"
OPPOSITE = "opposite"
ASSET_KINDS = (PRIMARY, OPPOSITE)

ASSET_STATUSES = (
    "pending",
    "queued",
    "generating",
    "needs_review",
    "blocked",
    "failed",
    "locked_approved",
)
IN_FLIGHT_STATUSES = ("queued", "generating")
TERMINAL_STATUSES = ("needs_review", "locked_approved", "failed", "blocked")
# Statuses whose output may anchor an Opposite asset
ANCHOR_READY_STATUSES = ("needs_review", "locked_approved")


class GenerationAsset(Base):
    """One candidate artifact slot (Primary or Opposite) within a space and step."""

    __tablename__ = "generation_assets"

    asset_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    space_id = Column(UUID(as_uuid=True), ForeignKey("spaces.space_id", ondelete="CASCADE"))  # Null for run-level steps
    step_index = Column(Integer, nullable=False)
    kind = Column(Text, nullable=False, default=PRIMARY)
    status = Column(Text, nullable=False, default="pending")
    attempt_count = Column(Integer, nullable=False, default=0)
    output_ref = Column(Text)
    anchor_ref = Column(Text)
    base_prompt = Column(Text, nullable=False, default="")
    qa_status = Column(Text)  # 'passed', 'failed', 'needs_human', 'blocked_for_human'
    qa_result = Column(JSONDoc)
    block_reason = Column(JSONDoc)
    last_event_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    space = relationship("Space")
    attempts = relationship(
        "Attempt",
        back_populates="asset",
        cascade="all, delete-orphan",
        order_by="Attempt.attempt_index",
    )

    __table_args__ = (
        Index("idx_assets_run_step", "run_id", "step_index"),
        Index("idx_assets_space_kind", "space_id", "kind"),
        {"schema": None},
    )

    def mark(self, status: str, **fields) -> None:
        """Set status (mirrored onto the space) plus any extra columns."""
        self.status = status
        self.last_event_at = datetime.utcnow()
        for name, value in fields.items():
            setattr(self, name, value)
        if self.space is not None:
            if self.kind == OPPOSITE:
                self.space.opposite_status = status
            else:
                self.space.primary_status = status

    @property
    def is_locked(self) -> bool:
        return self.status == "locked_approved"


class Attempt(Base):
    """Append-only audit record of one generation + judgment try."""

    __tablename__ = "generation_attempts"

    attempt_pk = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(UUID(as_uuid=True), ForeignKey("generation_assets.asset_id", ondelete="CASCADE"), nullable=False)
    run_id = Column(UUID(as_uuid=True), ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False)
    step_index = Column(Integer, nullable=False)
    attempt_index = Column(Integer, nullable=False)
    prompt = Column(Text)
    parameters = Column(JSONDoc)  # seed, settings, anchor_ref, retry delta
    model = Column(Text)
    output_ref = Column(Text)
    qa_verdict = Column(JSONDoc)
    decision = Column(Text)  # 'proceed', 'retry', 'block_for_human', 'error'
    error = Column(Text)
    reset_epoch = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    asset = relationship("GenerationAsset", back_populates="attempts")

    __table_args__ = (
        UniqueConstraint("asset_id", "attempt_index"),
        Index("idx_attempts_run_step", "run_id", "step_index"),
        {"schema": None},
    )
