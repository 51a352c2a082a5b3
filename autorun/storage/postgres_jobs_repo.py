"""Postgres-backed repository for pipeline jobs using SQLAlchemy."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import String, and_, cast, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from autorun.core.database import get_session_factory
from autorun.jobs.claims import LEASE_EXPIRED_ERROR
from autorun.jobs.models import (
  CLAIMABLE_CHUNK_STATUSES,
  CLAIMABLE_ITEM_STATUSES,
  ApprovalCheckpointRecord,
  ApprovalDecision,
  ChunkRecord,
  ItemRecord,
  ItemStatus,
  JobKind,
  JobPolicy,
  JobRecord,
  JobStatus,
  summarize_items,
)
from autorun.schema.jobs import ApprovalCheckpoint, ChunkJob, PipelineItem, PipelineJob, PipelineJobEvent
from autorun.storage.jobs_repo import DuplicateJobError, JobsRepository, validate_job_patch
from autorun.utils.db_retry import execute_with_retry

T = TypeVar("T")

# Model attribute names differ from record field names only for JSON columns.
_PATCH_COLUMNS = {"pinned_inputs": "pinned_inputs_json"}


def _claimable(model: type[PipelineItem] | type[ChunkJob], *, now: datetime, max_attempts: int) -> Any:
  """SQL form of the lease predicate shared by items and chunks."""
  statuses = CLAIMABLE_ITEM_STATUSES if model is PipelineItem else CLAIMABLE_CHUNK_STATUSES
  lease_free = or_(model.claim_expires_at.is_(None), model.claim_expires_at <= now)
  return or_(
    and_(model.status.in_(statuses), lease_free),
    and_(model.status == "running", lease_free, model.attempts < max_attempts),
  )


def _exhausted(model: type[PipelineItem] | type[ChunkJob], *, now: datetime, max_attempts: int) -> Any:
  return and_(model.status == "running", or_(model.claim_expires_at.is_(None), model.claim_expires_at <= now), model.attempts >= max_attempts)


def _lease_expired_error(model: type[PipelineItem] | type[ChunkJob]) -> Any:
  return func.replace(literal(LEASE_EXPIRED_ERROR), "{attempts}", cast(model.attempts, String))


class PostgresJobsRepository(JobsRepository):
  """Persist jobs, items, checkpoints, chunks and events to Postgres."""

  def __init__(self) -> None:
    self._session_factory = get_session_factory()
    if self._session_factory is None:
      raise RuntimeError("Database not initialized")

  async def _run(self, operation_name: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """Run one unit of work in its own session and transaction, retrying transient failures."""

    async def _attempt() -> T:
      async with self._session_factory() as session:
        result = await work(session)
        await session.commit()
        return result

    return await execute_with_retry(operation_name=operation_name, func=_attempt)

  async def create_job(self, record: JobRecord, items: Sequence[ItemRecord]) -> None:
    indexes = sorted(item.index for item in items)
    if indexes != list(range(len(items))):
      raise ValueError("Item indexes must be contiguous from 0.")

    async def _work(session: AsyncSession) -> None:
      session.add(
        PipelineJob(
          job_id=record.job_id,
          kind=record.kind,
          project_ref=record.project_ref,
          status=record.status,
          format=record.format,
          policy_json=record.policy.to_dict(),
          options_json=dict(record.options),
          total_count=record.total_count,
          completed_count=record.completed_count,
          error_count=record.error_count,
          current_stage_index=record.current_stage_index,
          tick_count=record.tick_count,
          awaiting_approval=record.awaiting_approval,
          approval_required_for=record.approval_required_for,
          pending_artifact_ref=record.pending_artifact_ref,
          pinned_inputs_json=dict(record.pinned_inputs),
          stop_reason=record.stop_reason,
          last_error=record.last_error,
          idempotency_key=record.idempotency_key,
          created_at=record.created_at,
          updated_at=record.updated_at,
          started_at=record.started_at,
          completed_at=record.completed_at,
        )
      )
      # Items reference the job, so the job row must reach the database first.
      await session.flush()
      session.add_all(
        PipelineItem(
          item_id=item.item_id,
          job_id=item.job_id,
          index=item.index,
          status=item.status,
          stage_key=item.stage_key,
          title=item.title,
          payload_json=dict(item.payload),
          attempts=item.attempts,
          generation=item.generation,
          created_at=item.created_at,
          updated_at=item.updated_at,
        )
        for item in items
      )

    try:
      await self._run("create_job", _work)
    except IntegrityError as exc:
      if record.idempotency_key is not None:
        raise DuplicateJobError(record.idempotency_key) from exc
      raise

  async def get_job(self, job_id: str) -> JobRecord | None:
    async def _work(session: AsyncSession) -> JobRecord | None:
      row = await session.get(PipelineJob, job_id)
      return self._job_to_record(row) if row is not None else None

    return await self._run("get_job", _work)

  async def find_by_idempotency_key(self, *, project_ref: str, kind: JobKind, idempotency_key: str) -> JobRecord | None:
    async def _work(session: AsyncSession) -> JobRecord | None:
      stmt = select(PipelineJob).where(PipelineJob.project_ref == project_ref, PipelineJob.kind == kind, PipelineJob.idempotency_key == idempotency_key).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._job_to_record(row) if row is not None else None

    return await self._run("find_by_idempotency_key", _work)

  async def transition_job(self, job_id: str, *, target: JobStatus, allowed_from: Iterable[str], now: datetime, stop_reason: str | None = None, last_error: str | None = None) -> JobRecord | None:
    sources = list(allowed_from)
    values: dict[str, Any] = {"status": target, "updated_at": now}
    if target == "running":
      values["stop_reason"] = None
      values["completed_at"] = None
      values["started_at"] = func.coalesce(PipelineJob.started_at, now)
    if target in {"completed", "failed", "stopped"}:
      values["completed_at"] = now
    if stop_reason is not None:
      values["stop_reason"] = stop_reason
    if last_error is not None:
      values["last_error"] = last_error

    async def _work(session: AsyncSession) -> JobRecord | None:
      stmt = update(PipelineJob).where(PipelineJob.job_id == job_id, PipelineJob.status.in_(sources)).values(**values).returning(PipelineJob)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._job_to_record(row) if row is not None else None

    return await self._run("transition_job", _work)

  async def patch_job(self, job_id: str, changes: Mapping[str, Any], *, now: datetime) -> JobRecord | None:
    validate_job_patch(changes)
    values = {_PATCH_COLUMNS.get(name, name): value for name, value in changes.items()}
    if "pinned_inputs_json" in values:
      values["pinned_inputs_json"] = dict(values["pinned_inputs_json"] or {})
    values["updated_at"] = now

    async def _work(session: AsyncSession) -> JobRecord | None:
      stmt = update(PipelineJob).where(PipelineJob.job_id == job_id).values(**values).returning(PipelineJob)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._job_to_record(row) if row is not None else None

    return await self._run("patch_job", _work)

  async def increment_tick_count(self, job_id: str, *, now: datetime) -> int | None:
    async def _work(session: AsyncSession) -> int | None:
      stmt = update(PipelineJob).where(PipelineJob.job_id == job_id).values(tick_count=PipelineJob.tick_count + 1, updated_at=now).returning(PipelineJob.tick_count)
      return (await session.execute(stmt)).scalar_one_or_none()

    return await self._run("increment_tick_count", _work)

  async def recompute_counters(self, job_id: str, *, now: datetime) -> JobRecord | None:
    async def _work(session: AsyncSession) -> JobRecord | None:
      # Lock the job row so concurrent recomputes serialize on it.
      row = (await session.execute(select(PipelineJob).where(PipelineJob.job_id == job_id).with_for_update())).scalar_one_or_none()
      if row is None:
        return None
      items = await self._items_in_session(session, job_id)
      counters = summarize_items(items)
      row.completed_count = counters.completed_count
      row.error_count = counters.error_count
      row.current_stage_index = counters.current_stage_index
      row.updated_at = now
      await session.flush()
      return self._job_to_record(row)

    return await self._run("recompute_counters", _work)

  async def append_event(self, *, job_id: str, event_type: str, message: str, now: datetime, payload: dict[str, Any] | None = None) -> None:
    async def _work(session: AsyncSession) -> None:
      session.add(PipelineJobEvent(job_id=job_id, event_type=event_type, message=message, payload_json=payload, created_at=now))

    await self._run("append_event", _work)

  async def list_events(self, *, job_id: str, limit: int = 100) -> list[str]:
    async def _work(session: AsyncSession) -> list[str]:
      stmt = select(PipelineJobEvent.message).where(PipelineJobEvent.job_id == job_id).order_by(PipelineJobEvent.id.desc()).limit(limit)
      messages = list((await session.execute(stmt)).scalars().all())
      messages.reverse()
      return messages

    return await self._run("list_events", _work)

  async def _items_in_session(self, session: AsyncSession, job_id: str) -> list[ItemRecord]:
    stmt = select(PipelineItem).where(PipelineItem.job_id == job_id).order_by(PipelineItem.index.asc())
    return [self._item_to_record(row) for row in (await session.execute(stmt)).scalars().all()]

  async def list_items(self, job_id: str) -> list[ItemRecord]:
    async def _work(session: AsyncSession) -> list[ItemRecord]:
      return await self._items_in_session(session, job_id)

    return await self._run("list_items", _work)

  async def list_claimable_items(self, job_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ItemRecord]:
    async def _work(session: AsyncSession) -> list[ItemRecord]:
      stmt = select(PipelineItem).where(PipelineItem.job_id == job_id, _claimable(PipelineItem, now=now, max_attempts=max_attempts)).order_by(PipelineItem.index.asc()).limit(limit)
      return [self._item_to_record(row) for row in (await session.execute(stmt)).scalars().all()]

    return await self._run("list_claimable_items", _work)

  async def claim_item(self, item_id: str, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ItemRecord | None:
    async def _work(session: AsyncSession) -> ItemRecord | None:
      stmt = (
        update(PipelineItem)
        .where(PipelineItem.item_id == item_id, _claimable(PipelineItem, now=now, max_attempts=max_attempts))
        .values(
          status="running",
          attempts=PipelineItem.attempts + 1,
          claim_key=claim_key,
          claimed_at=now,
          claim_expires_at=expires_at,
          started_at=func.coalesce(PipelineItem.started_at, now),
          error=None,
          updated_at=now,
        )
        .returning(PipelineItem)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._item_to_record(row) if row is not None else None

    return await self._run("claim_item", _work)

  async def complete_item(self, item_id: str, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ItemRecord | None:
    values: dict[str, Any] = {"status": status, "error": error, "claim_expires_at": None, "updated_at": now}
    if output_ref is not None:
      values["output_ref"] = output_ref
    if status == "done":
      values["completed_at"] = now

    async def _work(session: AsyncSession) -> ItemRecord | None:
      stmt = update(PipelineItem).where(PipelineItem.item_id == item_id, PipelineItem.status == "running", PipelineItem.claim_key == claim_key).values(**values).returning(PipelineItem)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._item_to_record(row) if row is not None else None

    return await self._run("complete_item", _work)

  async def expire_exhausted_items(self, job_id: str, *, now: datetime, max_attempts: int) -> list[ItemRecord]:
    async def _work(session: AsyncSession) -> list[ItemRecord]:
      stmt = (
        update(PipelineItem)
        .where(PipelineItem.job_id == job_id, _exhausted(PipelineItem, now=now, max_attempts=max_attempts))
        .values(status="failed", error=_lease_expired_error(PipelineItem), claim_expires_at=None, updated_at=now)
        .returning(PipelineItem)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return sorted((self._item_to_record(row) for row in rows), key=lambda item: item.index)

    return await self._run("expire_exhausted_items", _work)

  async def reset_items(self, job_id: str, *, from_statuses: Iterable[str], target_status: ItemStatus, now: datetime, indexes: Iterable[int] | None = None) -> list[ItemRecord]:
    statuses = list(from_statuses)
    wanted = list(indexes) if indexes is not None else None

    async def _work(session: AsyncSession) -> list[ItemRecord]:
      conditions = [
        PipelineItem.job_id == job_id,
        PipelineItem.status.in_(statuses),
        # Never yank a unit out from under a live lease.
        or_(PipelineItem.status != "running", PipelineItem.claim_expires_at.is_(None), PipelineItem.claim_expires_at <= now),
      ]
      if wanted is not None:
        conditions.append(PipelineItem.index.in_(wanted))
      stmt = (
        update(PipelineItem)
        .where(*conditions)
        .values(status=target_status, attempts=0, generation=PipelineItem.generation + 1, error=None, claim_key=None, claimed_at=None, claim_expires_at=None, completed_at=None, updated_at=now)
        .returning(PipelineItem)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return sorted((self._item_to_record(row) for row in rows), key=lambda item: item.index)

    return await self._run("reset_items", _work)

  async def create_checkpoint(self, record: ApprovalCheckpointRecord) -> bool:
    async def _work(session: AsyncSession) -> bool:
      if await session.get(ApprovalCheckpoint, record.checkpoint_id) is not None:
        return False
      session.add(
        ApprovalCheckpoint(
          checkpoint_id=record.checkpoint_id,
          job_id=record.job_id,
          stage_key=record.stage_key,
          item_id=record.item_id,
          pending_artifact_ref=record.pending_artifact_ref,
          requested_at=record.requested_at,
          decision=record.decision,
          decided_at=record.decided_at,
          note=record.note,
        )
      )
      await session.flush()
      return True

    try:
      return await self._run("create_checkpoint", _work)
    except IntegrityError:
      # A concurrent request inserted the same deterministic checkpoint id.
      return False

  async def latest_checkpoint(self, job_id: str, item_id: str) -> ApprovalCheckpointRecord | None:
    async def _work(session: AsyncSession) -> ApprovalCheckpointRecord | None:
      stmt = select(ApprovalCheckpoint).where(ApprovalCheckpoint.job_id == job_id, ApprovalCheckpoint.item_id == item_id).order_by(ApprovalCheckpoint.seq.desc()).limit(1)
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._checkpoint_to_record(row) if row is not None else None

    return await self._run("latest_checkpoint", _work)

  async def decide_checkpoint(self, checkpoint_id: str, *, decision: ApprovalDecision, note: str | None, now: datetime) -> ApprovalCheckpointRecord | None:
    async def _work(session: AsyncSession) -> ApprovalCheckpointRecord | None:
      stmt = (
        update(ApprovalCheckpoint)
        .where(ApprovalCheckpoint.checkpoint_id == checkpoint_id, ApprovalCheckpoint.decision.is_(None))
        .values(decision=decision, note=note, decided_at=now)
        .returning(ApprovalCheckpoint)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._checkpoint_to_record(row) if row is not None else None

    return await self._run("decide_checkpoint", _work)

  async def list_checkpoints(self, job_id: str) -> list[ApprovalCheckpointRecord]:
    async def _work(session: AsyncSession) -> list[ApprovalCheckpointRecord]:
      stmt = select(ApprovalCheckpoint).where(ApprovalCheckpoint.job_id == job_id).order_by(ApprovalCheckpoint.seq.asc())
      return [self._checkpoint_to_record(row) for row in (await session.execute(stmt)).scalars().all()]

    return await self._run("list_checkpoints", _work)

  async def create_chunks(self, chunks: Sequence[ChunkRecord]) -> bool:
    if not chunks:
      return False

    async def _work(session: AsyncSession) -> bool:
      session.add_all(
        ChunkJob(
          document_id=chunk.document_id,
          version_id=chunk.version_id,
          index=chunk.index,
          key=chunk.key,
          status=chunk.status,
          char_count=chunk.char_count,
          content=chunk.content,
          attempts=chunk.attempts,
          generation=chunk.generation,
          created_at=chunk.created_at,
          updated_at=chunk.updated_at,
        )
        for chunk in chunks
      )
      await session.flush()
      return True

    try:
      return await self._run("create_chunks", _work)
    except IntegrityError:
      # Another caller already split this document version.
      return False

  def _chunk_scope(self, document_id: str, version_id: str) -> list[Any]:
    return [ChunkJob.document_id == document_id, ChunkJob.version_id == version_id]

  async def list_chunks(self, document_id: str, version_id: str) -> list[ChunkRecord]:
    async def _work(session: AsyncSession) -> list[ChunkRecord]:
      stmt = select(ChunkJob).where(*self._chunk_scope(document_id, version_id)).order_by(ChunkJob.index.asc())
      return [self._chunk_to_record(row) for row in (await session.execute(stmt)).scalars().all()]

    return await self._run("list_chunks", _work)

  async def list_claimable_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int, limit: int) -> list[ChunkRecord]:
    async def _work(session: AsyncSession) -> list[ChunkRecord]:
      stmt = select(ChunkJob).where(*self._chunk_scope(document_id, version_id), _claimable(ChunkJob, now=now, max_attempts=max_attempts)).order_by(ChunkJob.index.asc()).limit(limit)
      return [self._chunk_to_record(row) for row in (await session.execute(stmt)).scalars().all()]

    return await self._run("list_claimable_chunks", _work)

  async def claim_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, now: datetime, expires_at: datetime, max_attempts: int) -> ChunkRecord | None:
    async def _work(session: AsyncSession) -> ChunkRecord | None:
      stmt = (
        update(ChunkJob)
        .where(*self._chunk_scope(document_id, version_id), ChunkJob.index == index, _claimable(ChunkJob, now=now, max_attempts=max_attempts))
        .values(status="running", attempts=ChunkJob.attempts + 1, claim_key=claim_key, claimed_at=now, claim_expires_at=expires_at, error=None, updated_at=now)
        .returning(ChunkJob)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._chunk_to_record(row) if row is not None else None

    return await self._run("claim_chunk", _work)

  async def complete_chunk(self, document_id: str, version_id: str, index: int, *, claim_key: str, status: ItemStatus, now: datetime, output_ref: str | None = None, error: str | None = None) -> ChunkRecord | None:
    values: dict[str, Any] = {"status": status, "error": error, "claim_expires_at": None, "updated_at": now}
    if output_ref is not None:
      values["output_ref"] = output_ref
    if status == "done":
      values["completed_at"] = now

    async def _work(session: AsyncSession) -> ChunkRecord | None:
      stmt = (
        update(ChunkJob)
        .where(*self._chunk_scope(document_id, version_id), ChunkJob.index == index, ChunkJob.status == "running", ChunkJob.claim_key == claim_key)
        .values(**values)
        .returning(ChunkJob)
      )
      row = (await session.execute(stmt)).scalar_one_or_none()
      return self._chunk_to_record(row) if row is not None else None

    return await self._run("complete_chunk", _work)

  async def expire_exhausted_chunks(self, document_id: str, version_id: str, *, now: datetime, max_attempts: int) -> list[ChunkRecord]:
    async def _work(session: AsyncSession) -> list[ChunkRecord]:
      stmt = (
        update(ChunkJob)
        .where(*self._chunk_scope(document_id, version_id), _exhausted(ChunkJob, now=now, max_attempts=max_attempts))
        .values(status="failed", error=_lease_expired_error(ChunkJob), claim_expires_at=None, updated_at=now)
        .returning(ChunkJob)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return sorted((self._chunk_to_record(row) for row in rows), key=lambda chunk: chunk.index)

    return await self._run("expire_exhausted_chunks", _work)

  async def reset_chunks(self, document_id: str, version_id: str, *, from_statuses: Iterable[str], now: datetime) -> list[ChunkRecord]:
    statuses = list(from_statuses)

    async def _work(session: AsyncSession) -> list[ChunkRecord]:
      stmt = (
        update(ChunkJob)
        .where(*self._chunk_scope(document_id, version_id), ChunkJob.status.in_(statuses))
        .values(status="queued", attempts=0, generation=ChunkJob.generation + 1, error=None, claim_key=None, claimed_at=None, claim_expires_at=None, completed_at=None, updated_at=now)
        .returning(ChunkJob)
      )
      rows = (await session.execute(stmt)).scalars().all()
      return sorted((self._chunk_to_record(row) for row in rows), key=lambda chunk: chunk.index)

    return await self._run("reset_chunks", _work)

  def _job_to_record(self, row: PipelineJob) -> JobRecord:
    return JobRecord(
      job_id=row.job_id,
      kind=row.kind,  # type: ignore[arg-type]
      project_ref=row.project_ref,
      status=row.status,  # type: ignore[arg-type]
      total_count=row.total_count,
      created_at=row.created_at,
      updated_at=row.updated_at,
      policy=JobPolicy.from_dict(row.policy_json),
      format=row.format,
      completed_count=row.completed_count,
      error_count=row.error_count,
      current_stage_index=row.current_stage_index,
      awaiting_approval=row.awaiting_approval,
      approval_required_for=row.approval_required_for,
      pending_artifact_ref=row.pending_artifact_ref,
      pinned_inputs=dict(row.pinned_inputs_json or {}),
      tick_count=row.tick_count,
      stop_reason=row.stop_reason,
      last_error=row.last_error,
      options=dict(row.options_json or {}),
      idempotency_key=row.idempotency_key,
      started_at=row.started_at,
      completed_at=row.completed_at,
    )

  def _item_to_record(self, row: PipelineItem) -> ItemRecord:
    return ItemRecord(
      item_id=row.item_id,
      job_id=row.job_id,
      index=row.index,
      status=row.status,  # type: ignore[arg-type]
      created_at=row.created_at,
      updated_at=row.updated_at,
      stage_key=row.stage_key,
      title=row.title,
      payload=dict(row.payload_json or {}),
      attempts=row.attempts,
      generation=row.generation,
      error=row.error,
      output_ref=row.output_ref,
      claim_key=row.claim_key,
      claimed_at=row.claimed_at,
      claim_expires_at=row.claim_expires_at,
      started_at=row.started_at,
      completed_at=row.completed_at,
    )

  def _checkpoint_to_record(self, row: ApprovalCheckpoint) -> ApprovalCheckpointRecord:
    return ApprovalCheckpointRecord(
      checkpoint_id=row.checkpoint_id,
      job_id=row.job_id,
      stage_key=row.stage_key,
      item_id=row.item_id,
      pending_artifact_ref=row.pending_artifact_ref,
      requested_at=row.requested_at,
      decision=row.decision,  # type: ignore[arg-type]
      decided_at=row.decided_at,
      note=row.note,
    )

  def _chunk_to_record(self, row: ChunkJob) -> ChunkRecord:
    return ChunkRecord(
      document_id=row.document_id,
      version_id=row.version_id,
      index=row.index,
      key=row.key,
      status=row.status,  # type: ignore[arg-type]
      char_count=row.char_count,
      created_at=row.created_at,
      updated_at=row.updated_at,
      content=row.content,
      attempts=row.attempts,
      generation=row.generation,
      error=row.error,
      output_ref=row.output_ref,
      claim_key=row.claim_key,
      claimed_at=row.claimed_at,
      claim_expires_at=row.claim_expires_at,
      completed_at=row.completed_at,
    )
