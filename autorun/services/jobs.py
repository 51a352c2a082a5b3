"""Job service: the operations behind the HTTP API and the in-process run loop."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, status

from autorun.config import Settings
from autorun.core.exceptions import InvalidTransitionError, JobNotFoundError
from autorun.jobs.approval import ApprovalGate
from autorun.jobs.chunks import ChunkTickResult, ChunkTracker
from autorun.jobs.claims import LeasePolicy
from autorun.jobs.dispatch import ProviderRegistry, build_provider_registry
from autorun.jobs.executor import StepExecutor
from autorun.jobs.ladders import normalize_format_key
from autorun.jobs.materialize import materialize_items
from autorun.jobs.models import (
  JOB_KINDS,
  REGENERABLE_STATUSES,
  ApprovalCheckpointRecord,
  ChunkGroup,
  ItemRecord,
  JobKind,
  JobPolicy,
  JobRecord,
  can_transition,
)
from autorun.jobs.progress import ProgressEstimate, estimate_progress
from autorun.jobs.tick import TickController, TickResult
from autorun.storage.jobs_repo import DuplicateJobError, JobsRepository
from autorun.utils.clock import Clock, utc_now
from autorun.utils.ids import generate_item_id, generate_job_id

logger = logging.getLogger(__name__)

_JOB_NOT_FOUND_MSG = "Job {job_id} not found."


@dataclass(frozen=True)
class JobStartResult:
  job: JobRecord
  items: list[ItemRecord]
  created: bool


@dataclass(frozen=True)
class JobStatusView:
  job: JobRecord
  items: list[ItemRecord]
  events: list[str]


class JobService:
  """Wires the store, tick controller, approval gate and chunk tracker together."""

  def __init__(self, repo: JobsRepository, settings: Settings, *, registry: ProviderRegistry | None = None, clock: Clock = utc_now) -> None:
    self._repo = repo
    self._settings = settings
    self._clock = clock
    lease = LeasePolicy(ttl_seconds=settings.claim_ttl_seconds, max_attempts=settings.max_attempts)
    executor = StepExecutor(registry or build_provider_registry(settings), timeout_seconds=settings.executor_timeout_seconds)
    self._ticks = TickController(repo, executor, lease=lease, max_items_limit=settings.max_items_per_tick_limit, clock=clock)
    self._gate = ApprovalGate(repo)
    self._chunks = ChunkTracker(repo, executor, lease=lease, chunk_max_chars=settings.chunk_max_chars, clock=clock)

  @property
  def repo(self) -> JobsRepository:
    return self._repo

  async def _get_job(self, job_id: str) -> JobRecord:
    job = await self._repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(_JOB_NOT_FOUND_MSG.format(job_id=job_id))
    return job

  async def start(self, *, kind: str, project_ref: str, policy: JobPolicy | None = None, options: dict[str, Any] | None = None, idempotency_key: str | None = None) -> JobStartResult:
    """Create a job and materialize its items; idempotent per (project, kind, key)."""
    if kind not in JOB_KINDS:
      raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unsupported job kind: {kind}")
    job_kind: JobKind = kind  # type: ignore[assignment]
    options = dict(options or {})
    policy = policy or JobPolicy(max_items_per_tick=self._settings.max_items_per_tick)
    if policy.max_items_per_tick > self._settings.max_items_per_tick_limit:
      raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"max_items_per_tick must not exceed {self._settings.max_items_per_tick_limit}.")

    if idempotency_key:
      existing = await self._repo.find_by_idempotency_key(project_ref=project_ref, kind=job_kind, idempotency_key=idempotency_key)
      if existing is not None:
        logger.info("Start deduplicated job_id=%s idempotency_key=%s", existing.job_id, idempotency_key)
        return JobStartResult(job=existing, items=await self._repo.list_items(existing.job_id), created=False)

    fmt = normalize_format_key(options.get("format") or self._settings.default_format) if job_kind == "document_autorun" else options.get("format")
    if job_kind == "document_autorun":
      options["format"] = fmt
    try:
      specs = materialize_items(job_kind, options)
    except ValueError as exc:
      raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    now = self._clock()
    job_id = generate_job_id()
    items = [
      ItemRecord(item_id=generate_item_id(), job_id=job_id, index=index, status="queued", created_at=now, updated_at=now, stage_key=spec.stage_key, title=spec.title, payload=dict(spec.payload))
      for index, spec in enumerate(specs)
    ]
    # Nothing to do means nothing to tick.
    initial_status = "queued" if items else "completed"
    record = JobRecord(
      job_id=job_id,
      kind=job_kind,
      project_ref=project_ref,
      status=initial_status,
      total_count=len(items),
      created_at=now,
      updated_at=now,
      policy=policy,
      format=fmt,
      options=options,
      idempotency_key=idempotency_key,
      completed_at=None if items else now,
    )
    try:
      await self._repo.create_job(record, items)
    except DuplicateJobError:
      # A concurrent start with the same key won the insert.
      existing = await self._repo.find_by_idempotency_key(project_ref=project_ref, kind=job_kind, idempotency_key=idempotency_key or "")
      if existing is None:
        raise
      return JobStartResult(job=existing, items=await self._repo.list_items(existing.job_id), created=False)

    await self._repo.append_event(job_id=job_id, event_type="job_started", message=f"Job started with {len(items)} item(s).", now=now, payload={"kind": job_kind})
    logger.info("Job started job_id=%s kind=%s project=%s items=%d", job_id, job_kind, project_ref, len(items))
    return JobStartResult(job=record, items=items, created=True)

  async def tick(self, job_id: str, *, max_items_per_tick: int | None = None) -> TickResult:
    return await self._ticks.tick(job_id, max_items_per_tick=max_items_per_tick)

  async def status(self, job_id: str) -> JobStatusView:
    job = await self._get_job(job_id)
    items = await self._repo.list_items(job_id)
    events = await self._repo.list_events(job_id=job_id)
    return JobStatusView(job=job, items=items, events=events)

  async def progress(self, job_id: str) -> ProgressEstimate:
    job = await self._get_job(job_id)
    items = await self._repo.list_items(job_id)
    return estimate_progress(job, items, now=self._clock())

  async def _transition(self, job_id: str, *, target: str, allowed_from: Iterable[str], noop_from: Iterable[str] = (), stop_reason: str | None = None) -> JobRecord:
    job = await self._get_job(job_id)
    if job.status in set(noop_from):
      return job
    sources = tuple(allowed_from)
    if job.status not in sources or not can_transition(job.status, target):
      raise InvalidTransitionError(f"Cannot move job {job_id} from {job.status} to {target}.")
    updated = await self._repo.transition_job(job_id, target=target, allowed_from=sources, now=self._clock(), stop_reason=stop_reason)  # type: ignore[arg-type]
    if updated is None:
      # Lost a race with another status change; report what the store holds now.
      current = await self._get_job(job_id)
      if current.status == target:
        return current
      raise InvalidTransitionError(f"Cannot move job {job_id} from {current.status} to {target}.")
    await self._repo.append_event(job_id=job_id, event_type=f"job_{target}", message=f"Job {target}.", now=self._clock())
    logger.info("Job transition job_id=%s %s -> %s", job_id, job.status, target)
    return updated

  async def pause(self, job_id: str) -> JobRecord:
    return await self._transition(job_id, target="paused", allowed_from=("queued", "running"), noop_from=("paused",), stop_reason="paused_by_user")

  async def resume(self, job_id: str) -> JobRecord:
    return await self._transition(job_id, target="running", allowed_from=("paused",), noop_from=("running", "queued"))

  async def stop(self, job_id: str) -> JobRecord:
    return await self._transition(job_id, target="stopped", allowed_from=("queued", "running", "paused", "failed"), noop_from=("stopped",), stop_reason="stopped_by_user")

  async def retry(self, job_id: str) -> JobRecord:
    """Flip a failed job back to running and requeue its failed items; done items stay done."""
    job = await self._transition(job_id, target="running", allowed_from=("failed",))
    requeued = await self._repo.reset_items(job_id, from_statuses=("failed",), target_status="queued", now=self._clock())
    logger.info("Job retry job_id=%s requeued=%s", job_id, [item.index for item in requeued])
    return await self._repo.recompute_counters(job_id, now=self._clock()) or job

  async def regen_items(self, job_id: str, *, statuses: Iterable[str] | None = None, indexes: Iterable[int] | None = None) -> tuple[JobRecord, list[int]]:
    """Requeue failed/failed_validation/needs_regen items, reopening a completed job."""
    wanted = set(statuses) if statuses is not None else set(REGENERABLE_STATUSES)
    invalid = wanted - REGENERABLE_STATUSES
    if invalid:
      raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Only {', '.join(sorted(REGENERABLE_STATUSES))} items can be regenerated.")
    job = await self._get_job(job_id)
    if job.status == "stopped":
      raise InvalidTransitionError(f"Job {job_id} is stopped.")

    reset = await self._repo.reset_items(job_id, from_statuses=wanted, target_status="queued", now=self._clock(), indexes=list(indexes) if indexes is not None else None)
    reset_indexes = sorted(item.index for item in reset)
    if reset_indexes and job.status == "completed":
      await self._repo.transition_job(job_id, target="running", allowed_from=("completed",), now=self._clock())
    if reset_indexes:
      await self._repo.append_event(job_id=job_id, event_type="items_regen", message=f"Requeued items {reset_indexes} for regeneration.", now=self._clock())
    logger.info("Item regen job_id=%s indexes=%s", job_id, reset_indexes)
    updated = await self._repo.recompute_counters(job_id, now=self._clock())
    return updated or job, reset_indexes

  async def decide(self, job_id: str, stage_key: str, *, approved: bool, note: str | None = None) -> JobRecord:
    return await self._gate.decide(job_id, stage_key, approved=approved, note=note, now=self._clock())

  async def approvals(self, job_id: str) -> list[ApprovalCheckpointRecord]:
    await self._get_job(job_id)
    return await self._repo.list_checkpoints(job_id)

  async def open_chunks(self, document_id: str, version_id: str, content: str) -> ChunkGroup | None:
    return await self._chunks.open(document_id, version_id, content)

  async def chunk_status(self, document_id: str, version_id: str) -> ChunkGroup:
    return await self._chunks.status(document_id, version_id)

  async def regen_chunks(self, document_id: str, version_id: str) -> tuple[ChunkGroup, list[int]]:
    indexes = await self._chunks.regenerate_missing(document_id, version_id)
    return await self._chunks.status(document_id, version_id), indexes

  async def tick_chunks(self, document_id: str, version_id: str, *, max_chunks: int = 1) -> ChunkTickResult:
    return await self._chunks.tick(document_id, version_id, max_chunks=min(max_chunks, self._settings.max_items_per_tick_limit))

  async def assemble_chunks(self, document_id: str, version_id: str) -> list[str] | None:
    return await self._chunks.assemble(document_id, version_id)
