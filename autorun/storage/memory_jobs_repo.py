"""In-process repository used by tests and local development.

Every operation runs under one ``asyncio.Lock`` so the conditional writes are
atomic with respect to each other, matching the single-statement guarantees of
the Postgres implementation. Records are copied on the way in and out so
callers can never mutate stored state by accident.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any

from autorun.jobs.claims import LEASE_EXPIRED_ERROR, is_claimable, is_lease_exhausted, lease_live
from autorun.jobs.models import (
  CLAIMABLE_CHUNK_STATUSES,
  ApprovalCheckpointRecord,
  ApprovalDecision,
  ChunkRecord,
  ItemRecord,
  ItemStatus,
  JobKind,
  JobRecord,
  JobStatus,
  summarize_items,
)
from autorun.storage.jobs_repo import DuplicateJobError, JobsRepository, validate_job_patch

_ChunkKey = tuple[str, str]


class InMemoryJobsRepository(JobsRepository):
  """Dictionary-backed implementation of the jobs repository contract."""

  def __init__(self) -> None:
    self._lock = asyncio.Lock()
    self._jobs: dict[str, JobRecord] = {}
    self._items: dict[str, ItemRecord] = {}
    self._items_by_job: dict[str, list[str]] = {}
    self._checkpoints: dict[str, list[ApprovalCheckpointRecord]] = {}
    self._events: dict[str, list[tuple[datetime, str, str, dict[str, Any] | None]]] = {}
    self._chunks: dict[_ChunkKey, list[ChunkRecord]] = {}

  async def create_job(self, record: JobRecord, items: Sequence[ItemRecord]) -> None:
    async with self._lock:
      if record.job_id in self._jobs:
        raise ValueError(f"Job {record.job_id} already exists.")
      if record.idempotency_key is not None and any(
        existing.project_ref == record.project_ref and existing.kind == record.kind and existing.idempotency_key == record.idempotency_key for existing in self._jobs.values()
      ):
        raise DuplicateJobError(record.idempotency_key)
      indexes = [item.index for item in items]
      if sorted(indexes) != list(range(len(items))):
        raise ValueError("Item indexes must be contiguous from 0.")
      self._jobs[record.job_id] = copy.deepcopy(record)
      ordered = sorted(items, key=lambda item: item.index)
      for item in ordered:
        self._items[item.item_id] = copy.deepcopy(item)
      self._items_by_job[record.job_id] = [item.item_id for item in ordered]

  async def get_job(self, job_id: str) -> JobRecord | None:
    async with self._lock:
      record = self._jobs.get(job_id)
      return copy.deepcopy(record) if record is not None else None

  async def find_by_idempotency_key(self, *, project_ref: str, kind: JobKind, idempotency_key: str) -> JobRecord | None:
    async with self._lock:
      for record in self._jobs.values():
        if record.project_ref == project_ref and record.kind == kind and record.idempotency_key == idempotency_key:
          return copy.deepcopy(record)
      return None

  async def transition_job(self, job_id: str, *, target: JobStatus, allowed_from: Iterable[str], now: datetime, stop_reason: str | None = None, last_error: str | None = None) -> JobRecord | None:
    sources = set(allowed_from)
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None or record.status not in sources:
        return None
      changes: dict[str, Any] = {"status": target, "updated_at": now}
      if target == "running":
        changes["stop_reason"] = None
        changes["completed_at"] = None
        if record.started_at is None:
          changes["started_at"] = now
      if target in {"completed", "failed", "stopped"}:
        changes["completed_at"] = now
      if stop_reason is not None:
        changes["stop_reason"] = stop_reason
      if last_error is not None:
        changes["last_error"] = last_error
      updated = replace(record, **changes)
      self._jobs[job_id] = updated
      return copy.deepcopy(updated)

  async def patch_job(self, job_id: str, changes: Mapping[str, Any], *, now: datetime) -> JobRecord | None:
    validate_job_patch(changes)
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None:
        return None
      updated = replace(record, **copy.deepcopy(dict(changes)), updated_at=now)
      self._jobs[job_id] = updated
      return copy.deepcopy(updated)

  async def increment_tick_count(self, job_id: str, *, now: datetime) -> int | None:
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None:
        return None
      self._jobs[job_id] = replace(record, tick_count=record.tick_count + 1, updated_at=now)
      return record.tick_count + 1

  async def recompute_counters(self, job_id: str, *, now: datetime) -> JobRecord | None:
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None:
        return None
      counters = summarize_items(self._job_items(job_id))
      updated = replace(record, completed_count=counters.completed_count, error_count=counters.error_count, current_stage_index=counters.current_stage_index, updated_at=now)
      self._jobs[job_id] = updated
      return copy.deepcopy(updated)

  async def append_event(self, *, job_id: str, event_type: str, message: str, now: datetime, payload: dict[str, Any] | None = None) -> None:
    async with self._lock:
      self._events.setdefault(job_id, []).append((now, event_type, message, copy.deepcopy(payload)))

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    async with self._lock:
      events = self._events.get(job_id, [])
      return [message for _, _, message, _ in events[-limit:]]

  def _job_items(self, job_id: str) -> list[ItemRecord]:
    return [self._items[item_id] for item_id in self._items_by_job.get(job_id, [])]

  async def list_items(self, job_id: str) -> list[ItemRecord]:
    async with self._lock:
      return copy.deepcopy(self._job_items(job_id))

  async def list_claimable_items(self, job_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ItemRecord]:
    async with self._lock:
      matches = [item for item in self._job_items(job_id) if is_claimable(item.status, item.claim_expires_at, item.attempts, now=now, max_attempts=max_attempts)]
      return copy.deepcopy(matches[:limit])

  async def claim_item(self, item_id: str, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ItemRecord | None:
    async with self._lock:
      item = self._items.get(item_id)
      if item is None or not is_claimable(item.status, item.claim_expires_at, item.attempts, now=now, max_attempts=max_attempts):
        return None
      updated = replace(item, status="running", attempts=item.attempts + 1, claim_key=claim_key, claimed_at=now, claim_expires_at=expires_at, started_at=item.started_at or now, error=None, updated_at=now)
      self._items[item_id] = updated
      return copy.deepcopy(updated)

  async def complete_item(self, item_id: str, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ItemRecord | None:
    async with self._lock:
      item = self._items.get(item_id)
      if item is None or item.status != "running" or item.claim_key != claim_key:
        return None
      updated = replace(item, status=status, output_ref=output_ref if output_ref is not None else item.output_ref, error=error, claim_expires_at=None, completed_at=now if status == "done" else item.completed_at, updated_at=now)
      self._items[item_id] = updated
      return copy.deepcopy(updated)

  async def expire_exhausted_items(self, job_id: str, *, now: datetime, max_attempts: int) -> list[ItemRecord]:
    async with self._lock:
      expired: list[ItemRecord] = []
      for item in self._job_items(job_id):
        if is_lease_exhausted(item.status, item.claim_expires_at, item.attempts, now=now, max_attempts=max_attempts):
          updated = replace(item, status="failed", error=LEASE_EXPIRED_ERROR.format(attempts=item.attempts), claim_expires_at=None, updated_at=now)
          self._items[item.item_id] = updated
          expired.append(updated)
      return copy.deepcopy(expired)

  async def reset_items(self, job_id: str, *, from_statuses: Iterable[str], target_status: ItemStatus, now: datetime, indexes: Iterable[int] | None = None) -> list[ItemRecord]:
    statuses = set(from_statuses)
    wanted = set(indexes) if indexes is not None else None
    async with self._lock:
      reset: list[ItemRecord] = []
      for item in self._job_items(job_id):
        if item.status not in statuses or (wanted is not None and item.index not in wanted):
          continue
        if item.status == "running" and lease_live(item.claim_expires_at, now):
          continue
        updated = replace(item, status=target_status, attempts=0, generation=item.generation + 1, error=None, claim_key=None, claimed_at=None, claim_expires_at=None, completed_at=None, updated_at=now)
        self._items[item.item_id] = updated
        reset.append(updated)
      return copy.deepcopy(reset)

  async def create_checkpoint(self, record: ApprovalCheckpointRecord) -> bool:
    async with self._lock:
      history = self._checkpoints.setdefault(record.job_id, [])
      if any(checkpoint.checkpoint_id == record.checkpoint_id for checkpoint in history):
        return False
      history.append(copy.deepcopy(record))
      return True

  async def latest_checkpoint(self, job_id: str, item_id: str) -> ApprovalCheckpointRecord | None:
    async with self._lock:
      history = [checkpoint for checkpoint in self._checkpoints.get(job_id, []) if checkpoint.item_id == item_id]
      return copy.deepcopy(history[-1]) if history else None

  async def decide_checkpoint(self, checkpoint_id: str, *, decision: ApprovalDecision, note: str | None, now: datetime) -> ApprovalCheckpointRecord | None:
    async with self._lock:
      for history in self._checkpoints.values():
        for position, checkpoint in enumerate(history):
          if checkpoint.checkpoint_id != checkpoint_id:
            continue
          if checkpoint.decision is not None:
            return None
          updated = replace(checkpoint, decision=decision, note=note, decided_at=now)
          history[position] = updated
          return copy.deepcopy(updated)
      return None

  async def list_checkpoints(self, job_id: str) -> list[ApprovalCheckpointRecord]:
    async with self._lock:
      return copy.deepcopy(self._checkpoints.get(job_id, []))

  async def create_chunks(self, chunks: Sequence[ChunkRecord]) -> bool:
    if not chunks:
      return False
    group_key = (chunks[0].document_id, chunks[0].version_id)
    async with self._lock:
      if group_key in self._chunks:
        return False
      self._chunks[group_key] = [copy.deepcopy(chunk) for chunk in sorted(chunks, key=lambda chunk: chunk.index)]
      return True

  async def list_chunks(self, document_id: str, version_id: str) -> list[ChunkRecord]:
    async with self._lock:
      return copy.deepcopy(self._chunks.get((document_id, version_id), []))

  async def list_claimable_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ChunkRecord]:
    async with self._lock:
      group = self._chunks.get((document_id, version_id), [])
      matches = [chunk for chunk in group if is_claimable(chunk.status, chunk.claim_expires_at, chunk.attempts, now=now, max_attempts=max_attempts, statuses=CLAIMABLE_CHUNK_STATUSES)]
      return copy.deepcopy(matches[:limit])

  def _chunk_at(self, document_id: str, version_id: str, index: int) -> ChunkRecord | None:
    group = self._chunks.get((document_id, version_id), [])
    if 0 <= index < len(group):
      return group[index]
    return None

  async def claim_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ChunkRecord | None:
    async with self._lock:
      chunk = self._chunk_at(document_id, version_id, index)
      if chunk is None or not is_claimable(chunk.status, chunk.claim_expires_at, chunk.attempts, now=now, max_attempts=max_attempts, statuses=CLAIMABLE_CHUNK_STATUSES):
        return None
      updated = replace(chunk, status="running", attempts=chunk.attempts + 1, claim_key=claim_key, claimed_at=now, claim_expires_at=expires_at, error=None, updated_at=now)
      self._chunks[(document_id, version_id)][index] = updated
      return copy.deepcopy(updated)

  async def complete_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ChunkRecord | None:
    async with self._lock:
      chunk = self._chunk_at(document_id, version_id, index)
      if chunk is None or chunk.status != "running" or chunk.claim_key != claim_key:
        return None
      updated = replace(chunk, status=status, output_ref=output_ref if output_ref is not None else chunk.output_ref, error=error, claim_expires_at=None, completed_at=now if status == "done" else chunk.completed_at, updated_at=now)
      self._chunks[(document_id, version_id)][index] = updated
      return copy.deepcopy(updated)

  async def expire_exhausted_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int) -> list[ChunkRecord]:
    async with self._lock:
      group = self._chunks.get((document_id, version_id), [])
      expired: list[ChunkRecord] = []
      for position, chunk in enumerate(group):
        if is_lease_exhausted(chunk.status, chunk.claim_expires_at, chunk.attempts, now=now, max_attempts=max_attempts):
          group[position] = replace(chunk, status="failed", error=LEASE_EXPIRED_ERROR.format(attempts=chunk.attempts), claim_expires_at=None, updated_at=now)
          expired.append(group[position])
      return copy.deepcopy(expired)

  async def reset_chunks(self, document_id: str, version_id: str, *, from_statuses: Iterable[str], now: datetime) -> list[ChunkRecord]:
    statuses = set(from_statuses)
    async with self._lock:
      group = self._chunks.get((document_id, version_id), [])
      reset: list[ChunkRecord] = []
      for position, chunk in enumerate(group):
        if chunk.status not in statuses:
          continue
        group[position] = replace(chunk, status="queued", attempts=0, generation=chunk.generation + 1, error=None, claim_key=None, claimed_at=None, claim_expires_at=None, completed_at=None, updated_at=now)
        reset.append(group[position])
      return copy.deepcopy(reset)
