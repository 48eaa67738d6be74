"""Initial pipeline schema

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "pipeline_runs" in existing_tables:
        return

    op.create_table(
        "pipeline_runs",
        sa.Column("run_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("source_ref", sa.Text, nullable=False),
        sa.Column("phase", sa.Text, nullable=False, server_default="upload"),
        sa.Column("current_step", sa.Integer, nullable=False, server_default="0"),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("reset_epoch", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("calibration_hint", JSONB),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )

    op.create_table(
        "step_outputs",
        sa.Column("output_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("artifact_ref", sa.Text),
        sa.Column("outputs", JSONB),
        sa.Column("approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("approved_at", sa.DateTime),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "step_index"),
    )

    op.create_table(
        "step_retry_states",
        sa.Column("state_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("auto_retry_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("last_qa_result", JSONB),
        sa.Column("last_retry_delta", JSONB),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("run_id", "step_index"),
    )

    op.create_table(
        "spaces",
        sa.Column("space_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("space_type", sa.Text),
        sa.Column("primary_status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("opposite_status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_spaces_run_id", "spaces", ["run_id"])

    op.create_table(
        "generation_assets",
        sa.Column("asset_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("space_id", UUID(as_uuid=True), sa.ForeignKey("spaces.space_id", ondelete="CASCADE")),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("kind", sa.Text, nullable=False, server_default="primary"),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("output_ref", sa.Text),
        sa.Column("anchor_ref", sa.Text),
        sa.Column("base_prompt", sa.Text, nullable=False, server_default=""),
        sa.Column("qa_status", sa.Text),
        sa.Column("qa_result", JSONB),
        sa.Column("block_reason", JSONB),
        sa.Column("last_event_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint("kind IN ('primary', 'opposite')", name="ck_assets_kind"),
    )
    op.create_index("idx_assets_run_step", "generation_assets", ["run_id", "step_index"])
    op.create_index("idx_assets_space_kind", "generation_assets", ["space_id", "kind"])

    op.create_table(
        "generation_attempts",
        sa.Column("attempt_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("asset_id", UUID(as_uuid=True), sa.ForeignKey("generation_assets.asset_id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("attempt_index", sa.Integer, nullable=False),
        sa.Column("prompt", sa.Text),
        sa.Column("parameters", JSONB),
        sa.Column("model", sa.Text),
        sa.Column("output_ref", sa.Text),
        sa.Column("qa_verdict", JSONB),
        sa.Column("decision", sa.Text),
        sa.Column("error", sa.Text),
        sa.Column("reset_epoch", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("asset_id", "attempt_index"),
    )
    op.create_index("idx_attempts_run_step", "generation_attempts", ["run_id", "step_index"])

    op.create_table(
        "pipeline_events",
        sa.Column("event_pk", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("asset_id", UUID(as_uuid=True)),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("message", sa.Text),
        sa.Column("payload", JSONB),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_events_run_step", "pipeline_events", ["run_id", "step_index"])

    op.create_table(
        "jobs",
        sa.Column("job_id", UUID(as_uuid=True), primary_key=True),
        sa.Column("run_id", UUID(as_uuid=True), sa.ForeignKey("pipeline_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("asset_id", UUID(as_uuid=True), nullable=False),
        sa.Column("step_index", sa.Integer, nullable=False),
        sa.Column("agent", sa.Text, nullable=False, server_default="generate"),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("payload", JSONB),
        sa.Column("reset_epoch", sa.Integer, nullable=False),
        sa.Column("is_auto_retry", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("run_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("retries", sa.Integer, server_default="0"),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_jobs_status", "jobs", ["status"])
    op.create_index("idx_jobs_run_id", "jobs", ["run_id"])
    op.create_index("idx_jobs_due", "jobs", ["status", "run_at"])


def downgrade() -> None:
    op.drop_table("jobs")
    op.drop_table("pipeline_events")
    op.drop_table("generation_attempts")
    op.drop_table("generation_assets")
    op.drop_table("spaces")
    op.drop_table("step_retry_states")
    op.drop_table("step_outputs")
    op.drop_table("pipeline_runs")
