"""Storage interfaces for pipeline jobs, items, approval checkpoints and chunks."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

from autorun.jobs.models import ApprovalCheckpointRecord, ApprovalDecision, ChunkRecord, ItemRecord, ItemStatus, JobKind, JobRecord, JobStatus

# Job fields that may be written through ``patch_job``; status and counters have dedicated operations.
JOB_PATCH_FIELDS = frozenset({"awaiting_approval", "approval_required_for", "pending_artifact_ref", "pinned_inputs", "last_error", "stop_reason"})


class DuplicateJobError(Exception):
  """Raised when a job with the same (project, kind, idempotency key) already exists."""


def validate_job_patch(changes: Mapping[str, Any]) -> None:
  unknown = set(changes) - JOB_PATCH_FIELDS
  if unknown:
    raise ValueError(f"Unsupported job patch fields: {', '.join(sorted(unknown))}")


class JobsRepository(Protocol):
  """Repository contract for pipeline persistence.

  Every mutation that can race with another caller is a conditional write that
  returns ``None`` (or an empty list) when its precondition no longer holds.
  """

  async def create_job(self, record: JobRecord, items: Sequence[ItemRecord]) -> None:
    """Persist a job and all of its materialized items together."""

  async def get_job(self, job_id: str) -> JobRecord | None:
    """Fetch a job by identifier."""

  async def find_by_idempotency_key(self, *, project_ref: str, kind: JobKind, idempotency_key: str) -> JobRecord | None:
    """Return a job created with a given (project, kind, idempotency_key) tuple."""

  async def transition_job(self, job_id: str, *, target: JobStatus, allowed_from: Iterable[str], now: datetime, stop_reason: str | None = None, last_error: str | None = None) -> JobRecord | None:
    """Set job status only when the current status is in ``allowed_from``."""

  async def patch_job(self, job_id: str, changes: Mapping[str, Any], *, now: datetime) -> JobRecord | None:
    """Apply a partial update limited to ``JOB_PATCH_FIELDS``; ``None`` values clear a field."""

  async def increment_tick_count(self, job_id: str, *, now: datetime) -> int | None:
    """Atomically increment and return the job's tick counter."""

  async def recompute_counters(self, job_id: str, *, now: datetime) -> JobRecord | None:
    """Rewrite completed/error counters and current stage index from item state."""

  async def append_event(self, *, job_id: str, event_type: str, message: str, now: datetime, payload: dict[str, Any] | None = None) -> None:
    """Append one timeline event for a job."""

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    """List recent event messages for a job, oldest first."""

  async def list_items(self, job_id: str) -> list[ItemRecord]:
    """Return every item of a job ordered by index."""

  async def list_claimable_items(self, job_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ItemRecord]:
    """Return claimable items ordered by index (queued, needs_regen, or abandoned running)."""

  async def claim_item(self, item_id: str, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ItemRecord | None:
    """Lease an item when no unexpired claim exists; increments attempts."""

  async def complete_item(self, item_id: str, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ItemRecord | None:
    """Record an execution outcome only if ``claim_key`` still owns the item."""

  async def expire_exhausted_items(self, job_id: str, *, now: datetime, max_attempts: int) -> list[ItemRecord]:
    """Mark running items whose lease expired with no attempts left as failed."""

  async def reset_items(self, job_id: str, *, from_statuses: Iterable[str], target_status: ItemStatus, now: datetime, indexes: Iterable[int] | None = None) -> list[ItemRecord]:
    """Move matching items to ``target_status``, clear attempts, claims and errors, and bump ``generation``."""

  async def create_checkpoint(self, record: ApprovalCheckpointRecord) -> bool:
    """Persist a checkpoint; returns False when one with the same id already exists."""

  async def latest_checkpoint(self, job_id: str, item_id: str) -> ApprovalCheckpointRecord | None:
    """Return the most recent checkpoint for a gated item; it is the authoritative one."""

  async def decide_checkpoint(self, checkpoint_id: str, *, decision: ApprovalDecision, note: str | None, now: datetime) -> ApprovalCheckpointRecord | None:
    """Record a decision only when the checkpoint is still undecided."""

  async def list_checkpoints(self, job_id: str) -> list[ApprovalCheckpointRecord]:
    """Return the full checkpoint history for a job, oldest first."""

  async def create_chunks(self, chunks: Sequence[ChunkRecord]) -> bool:
    """Persist a chunk group; returns False when the group already exists."""

  async def list_chunks(self, document_id: str, version_id: str) -> list[ChunkRecord]:
    """Return a chunk group ordered by index."""

  async def list_claimable_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ChunkRecord]:
    """Return claimable chunks ordered by index (queued or abandoned running)."""

  async def claim_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ChunkRecord | None:
    """Lease a chunk when no unexpired claim exists; increments attempts."""

  async def complete_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ChunkRecord | None:
    """Record a chunk outcome only if ``claim_key`` still owns the chunk."""

  async def expire_exhausted_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int) -> list[ChunkRecord]:
    """Mark running chunks whose lease expired with no attempts left as failed."""

  async def reset_chunks(self, document_id: str, version_id: str, *, from_statuses: Iterable[str], now: datetime) -> list[ChunkRecord]:
    """Requeue chunks in ``from_statuses`` and bump their ``generation``; other chunks are untouched."""
