from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Identity, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from autorun.core.database import Base


class PipelineJob(Base):
  __tablename__ = "pipeline_jobs"
  __table_args__ = (
    Index("ux_pipeline_jobs_project_kind_idempotency", "project_ref", "kind", "idempotency_key", unique=True, postgresql_where=text("idempotency_key IS NOT NULL")),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  kind: Mapped[str] = mapped_column(String, nullable=False, index=True)
  project_ref: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  format: Mapped[str | None] = mapped_column(String, nullable=True)
  policy_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  options_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  completed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  current_stage_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  tick_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  awaiting_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  approval_required_for: Mapped[str | None] = mapped_column(String, nullable=True)
  pending_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
  pinned_inputs_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  stop_reason: Mapped[str | None] = mapped_column(String, nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PipelineItem(Base):
  __tablename__ = "pipeline_items"
  __table_args__ = (
    UniqueConstraint("job_id", "index", name="ux_pipeline_items_job_index"),
    Index("ix_pipeline_items_job_status", "job_id", "status"),
  )

  item_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  index: Mapped[int] = mapped_column(Integer, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False)
  stage_key: Mapped[str | None] = mapped_column(String, nullable=True)
  title: Mapped[str | None] = mapped_column(String, nullable=True)
  payload_json: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  output_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
  claim_key: Mapped[str | None] = mapped_column(String, nullable=True)
  claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ApprovalCheckpoint(Base):
  __tablename__ = "approval_checkpoints"
  __table_args__ = (Index("ix_approval_checkpoints_job_item", "job_id", "item_id"),)

  checkpoint_id: Mapped[str] = mapped_column(String, primary_key=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  stage_key: Mapped[str] = mapped_column(String, nullable=False)
  item_id: Mapped[str] = mapped_column(String, nullable=False)
  pending_artifact_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
  requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
  decision: Mapped[str | None] = mapped_column(String, nullable=True)
  decided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  note: Mapped[str | None] = mapped_column(Text, nullable=True)
  # Insertion order breaks ties between checkpoints requested in the same instant.
  seq: Mapped[int] = mapped_column(Integer, Identity(always=False), unique=True, nullable=False)


class ChunkJob(Base):
  __tablename__ = "chunk_jobs"
  __table_args__ = (UniqueConstraint("document_id", "version_id", "index", name="ux_chunk_jobs_document_version_index"),)

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  document_id: Mapped[str] = mapped_column(String, nullable=False)
  version_id: Mapped[str] = mapped_column(String, nullable=False)
  index: Mapped[int] = mapped_column(Integer, nullable=False)
  key: Mapped[str] = mapped_column(String, nullable=False, unique=True)
  status: Mapped[str] = mapped_column(String, nullable=False)
  char_count: Mapped[int] = mapped_column(Integer, nullable=False)
  content: Mapped[str] = mapped_column(Text, nullable=False, default="")
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  generation: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  error: Mapped[str | None] = mapped_column(Text, nullable=True)
  output_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
  claim_key: Mapped[str | None] = mapped_column(String, nullable=True)
  claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PipelineJobEvent(Base):
  __tablename__ = "pipeline_job_events"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  job_id: Mapped[str] = mapped_column(ForeignKey("pipeline_jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
  message: Mapped[str] = mapped_column(Text, nullable=False)
  payload_json: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
