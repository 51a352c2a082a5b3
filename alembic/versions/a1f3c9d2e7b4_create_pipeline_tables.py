"""Create pipeline job, item, checkpoint, chunk and event tables.

Revision ID: a1f3c9d2e7b4
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "a1f3c9d2e7b4"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(*, started: bool = True) -> list[sa.Column]:
  columns = [
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
  ]
  if started:
    columns.append(sa.Column("started_at", sa.DateTime(timezone=True), nullable=True))
  columns.append(sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True))
  return columns


def _claim_columns() -> list[sa.Column]:
  return [
    sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("generation", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("output_ref", sa.Text(), nullable=True),
    sa.Column("claim_key", sa.String(), nullable=True),
    sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
  ]


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "pipeline_jobs",
    sa.Column("job_id", sa.String(), primary_key=True),
    sa.Column("kind", sa.String(), nullable=False),
    sa.Column("project_ref", sa.String(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("format", sa.String(), nullable=True),
    sa.Column("policy_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("options_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("current_stage_index", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("tick_count", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("awaiting_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("approval_required_for", sa.String(), nullable=True),
    sa.Column("pending_artifact_ref", sa.Text(), nullable=True),
    sa.Column("pinned_inputs_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("stop_reason", sa.String(), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    *_timestamps(),
  )
  op.create_index("ix_pipeline_jobs_kind", "pipeline_jobs", ["kind"])
  op.create_index("ix_pipeline_jobs_project_ref", "pipeline_jobs", ["project_ref"])
  op.create_index("ix_pipeline_jobs_status", "pipeline_jobs", ["status"])
  op.create_index(
    "ux_pipeline_jobs_project_kind_idempotency",
    "pipeline_jobs",
    ["project_ref", "kind", "idempotency_key"],
    unique=True,
    postgresql_where=sa.text("idempotency_key IS NOT NULL"),
  )

  op.create_table(
    "pipeline_items",
    sa.Column("item_id", sa.String(), primary_key=True),
    sa.Column("job_id", sa.String(), sa.ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False),
    sa.Column("index", sa.Integer(), nullable=False),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("stage_key", sa.String(), nullable=True),
    sa.Column("title", sa.String(), nullable=True),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    *_claim_columns(),
    *_timestamps(),
    sa.UniqueConstraint("job_id", "index", name="ux_pipeline_items_job_index"),
  )
  op.create_index("ix_pipeline_items_job_id", "pipeline_items", ["job_id"])
  op.create_index("ix_pipeline_items_job_status", "pipeline_items", ["job_id", "status"])

  op.create_table(
    "approval_checkpoints",
    sa.Column("checkpoint_id", sa.String(), primary_key=True),
    sa.Column("job_id", sa.String(), sa.ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False),
    sa.Column("stage_key", sa.String(), nullable=False),
    sa.Column("item_id", sa.String(), nullable=False),
    sa.Column("pending_artifact_ref", sa.Text(), nullable=True),
    sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("decision", sa.String(), nullable=True),
    sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("note", sa.Text(), nullable=True),
    sa.Column("seq", sa.Integer(), sa.Identity(always=False), nullable=False, unique=True),
  )
  op.create_index("ix_approval_checkpoints_job_id", "approval_checkpoints", ["job_id"])
  op.create_index("ix_approval_checkpoints_job_item", "approval_checkpoints", ["job_id", "item_id"])

  op.create_table(
    "chunk_jobs",
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("document_id", sa.String(), nullable=False),
    sa.Column("version_id", sa.String(), nullable=False),
    sa.Column("index", sa.Integer(), nullable=False),
    sa.Column("key", sa.String(), nullable=False, unique=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("char_count", sa.Integer(), nullable=False),
    sa.Column("content", sa.Text(), nullable=False, server_default=""),
    *_claim_columns(),
    *_timestamps(started=False),
    sa.UniqueConstraint("document_id", "version_id", "index", name="ux_chunk_jobs_document_version_index"),
  )

  op.create_table(
    "pipeline_job_events",
    sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
    sa.Column("job_id", sa.String(), sa.ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
  )
  op.create_index("ix_pipeline_job_events_job_id", "pipeline_job_events", ["job_id"])
  op.create_index("ix_pipeline_job_events_event_type", "pipeline_job_events", ["event_type"])


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_table("pipeline_job_events")
  op.drop_table("chunk_jobs")
  op.drop_table("approval_checkpoints")
  op.drop_table("pipeline_items")
  op.drop_table("pipeline_jobs")
