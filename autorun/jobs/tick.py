"""Tick controller: one bounded pass of claim, execute and record for a job.

A tick holds no state between calls. Everything it knows comes from the store
and every write it makes is conditional, so any number of callers may tick the
same job at once: each item is leased by exactly one of them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from autorun.core.exceptions import JobNotFoundError
from autorun.jobs.approval import ApprovalGate, GateState
from autorun.jobs.claims import LeasePolicy, WorkClaimer
from autorun.jobs.executor import StepExecutor
from autorun.jobs.models import ItemRecord, JobRecord
from autorun.storage.jobs_repo import JobsRepository
from autorun.utils.clock import Clock, utc_now
from autorun.utils.ids import generation_key

logger = logging.getLogger(__name__)

# Scan a few more candidates than we can execute so lost claims do not starve the tick.
CANDIDATE_SCAN_FACTOR = 3
_OPEN_ITEM_STATUSES = frozenset({"queued", "running", "needs_regen"})


@dataclass(frozen=True)
class TickResult:
  """Outcome of one tick; ``done`` is true iff the job status is terminal for ticking."""

  done: bool
  job: JobRecord
  processed_count: int
  blocked: bool = False


class TickController:
  """Claims and executes at most ``max_items_per_tick`` units per call."""

  def __init__(self, repo: JobsRepository, executor: StepExecutor, *, lease: LeasePolicy, max_items_limit: int = 10, clock: Clock = utc_now) -> None:
    self._repo = repo
    self._executor = executor
    self._lease = lease
    self._max_items_limit = max(max_items_limit, 1)
    self._clock = clock
    self._gate = ApprovalGate(repo)

  def _effective_limit(self, job: JobRecord, requested: int | None) -> int:
    limit = requested if requested is not None else job.policy.max_items_per_tick
    return min(max(int(limit), 1), self._max_items_limit)

  async def _load(self, job_id: str) -> JobRecord:
    job = await self._repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(f"Job {job_id} not found.")
    return job

  async def tick(self, job_id: str, *, max_items_per_tick: int | None = None) -> TickResult:
    now = self._clock()
    job = await self._load(job_id)
    # Paused, stopped and finished jobs are left untouched.
    if job.is_done:
      return TickResult(done=True, job=job, processed_count=0)

    if job.status == "queued":
      started = await self._repo.transition_job(job_id, target="running", allowed_from=("queued",), now=now)
      job = started or await self._load(job_id)
      if job.is_done:
        return TickResult(done=True, job=job, processed_count=0)

    tick_number = await self._repo.increment_tick_count(job_id, now=now)
    limit = self._effective_limit(job, max_items_per_tick)
    claimer = WorkClaimer(self._repo, self._lease)
    logger.info("Tick start job_id=%s tick=%s limit=%d caller=%s", job_id, tick_number, limit, claimer.caller_id)

    halted = await self._expire_abandoned(job, now=now)
    processed = 0
    gate = GateState(action="clear")
    while not halted and processed < limit:
      job = await self._load(job_id)
      # Pause and stop are cooperative; honour them between items.
      if job.is_done:
        break
      items = await self._repo.list_items(job_id)
      gate, job = await self._gate.evaluate(job, items, now=self._clock())
      if gate.blocks_progress:
        break

      candidates = await self._repo.list_claimable_items(job_id, now=self._clock(), max_attempts=self._lease.max_attempts, limit=(limit - processed) * CANDIDATE_SCAN_FACTOR)
      candidates = [item for item in candidates if gate.allows(item.index)]
      claimed = await self._claim_first(claimer, candidates)
      if claimed is None:
        break

      processed += 1
      halted = await self._run_item(job, claimed)

    job = await self._finish(job_id)
    if not job.is_done and not halted:
      items = await self._repo.list_items(job_id)
      gate, job = await self._gate.evaluate(job, items, now=self._clock())
      job = await self._maybe_complete(job, items, gate)

    blocked = not job.is_done and gate.blocks_progress
    logger.info("Tick finish job_id=%s tick=%s processed=%d status=%s completed=%d/%d errors=%d blocked=%s", job_id, tick_number, processed, job.status, job.completed_count, job.total_count, job.error_count, blocked)
    return TickResult(done=job.is_done, job=job, processed_count=processed, blocked=blocked)

  async def _claim_first(self, claimer: WorkClaimer, candidates: list[ItemRecord]) -> ItemRecord | None:
    for candidate in candidates:
      claimed = await claimer.claim_item(candidate, now=self._clock())
      if claimed is not None:
        return claimed
    return None

  async def _run_item(self, job: JobRecord, item: ItemRecord) -> bool:
    """Execute one leased item; returns True when the job must stop ticking."""
    assert item.claim_key is not None
    outcome = await self._executor.execute(job, item, idempotency_key=generation_key(item.item_id, item.generation))
    finished_at = self._clock()
    recorded = await self._repo.complete_item(item.item_id, claim_key=item.claim_key, status=outcome.status, now=finished_at, output_ref=outcome.output_ref, error=outcome.error)
    if recorded is None:
      # Our lease expired mid-call and another caller re-claimed the item; its result wins.
      logger.warning("Lease lost before completion job_id=%s item=%d claim=%s", job.job_id, item.index, item.claim_key)
      return False

    label = item.stage_key or item.title or f"#{item.index}"
    if outcome.succeeded:
      await self._repo.append_event(job_id=job.job_id, event_type="item_done", message=f"Item {item.index} ({label}) done.", now=finished_at, payload={"outputRef": outcome.output_ref})
      return False

    logger.warning("Item failed job_id=%s item=%d status=%s error=%s", job.job_id, item.index, outcome.status, outcome.error)
    await self._repo.append_event(job_id=job.job_id, event_type=f"item_{outcome.status}", message=f"Item {item.index} ({label}) {outcome.status}: {outcome.error}", now=finished_at)
    if job.policy.stop_on_first_fail:
      await self._fail_job(job, f"Item {item.index} ({label}) {outcome.status}: {outcome.error}")
      return True
    return False

  async def _expire_abandoned(self, job: JobRecord, *, now: datetime) -> bool:
    """Fail items whose lease lapsed with no attempts left; True when that fails the job."""
    expired = await self._repo.expire_exhausted_items(job.job_id, now=now, max_attempts=self._lease.max_attempts)
    for item in expired:
      logger.warning("Lease exhausted job_id=%s item=%d attempts=%d", job.job_id, item.index, item.attempts)
      await self._repo.append_event(job_id=job.job_id, event_type="item_failed", message=f"Item {item.index} failed: {item.error}", now=now)
    if expired and job.policy.stop_on_first_fail:
      first = min(expired, key=lambda item: item.index)
      await self._fail_job(job, f"Item {first.index} failed: {first.error}")
      return True
    return False

  async def _fail_job(self, job: JobRecord, reason: str) -> None:
    failed = await self._repo.transition_job(job.job_id, target="failed", allowed_from=("running",), now=self._clock(), stop_reason="stop_on_first_fail", last_error=reason)
    if failed is not None:
      logger.warning("Job failed on first item failure job_id=%s reason=%s", job.job_id, reason)
      await self._repo.append_event(job_id=job.job_id, event_type="job_failed", message=reason, now=self._clock())

  async def _finish(self, job_id: str) -> JobRecord:
    job = await self._repo.recompute_counters(job_id, now=self._clock())
    if job is None:
      raise JobNotFoundError(f"Job {job_id} not found.")
    return job

  async def _maybe_complete(self, job: JobRecord, items: list[ItemRecord], gate: GateState) -> JobRecord:
    if job.status != "running":
      return job

    if gate.action == "unreachable":
      # The gated item failed, so later stages can never run; wait for a regen.
      paused = await self._repo.transition_job(job.job_id, target="paused", allowed_from=("running",), now=self._clock(), stop_reason="gate_item_failed", last_error=gate.item.error if gate.item else None)
      if paused is not None:
        logger.warning("Job paused: gated stage failed job_id=%s stage=%s", job.job_id, gate.item.stage_key if gate.item else None)
        await self._repo.append_event(job_id=job.job_id, event_type="job_paused", message="Gated stage failed; regenerate it to continue.", now=self._clock())
        return paused
      return await self._load(job.job_id)

    if not gate.clear or job.awaiting_approval:
      return job
    if any(item.status in _OPEN_ITEM_STATUSES for item in items):
      return job

    completed = await self._repo.transition_job(job.job_id, target="completed", allowed_from=("running",), now=self._clock())
    if completed is None:
      return await self._load(job.job_id)
    logger.info("Job completed job_id=%s completed=%d errors=%d", job.job_id, completed.completed_count, completed.error_count)
    await self._repo.append_event(job_id=job.job_id, event_type="job_completed", message=f"Job completed: {completed.completed_count}/{completed.total_count} done, {completed.error_count} failed.", now=self._clock())
    return completed
