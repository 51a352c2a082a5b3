"""Approval gate: a human checkpoint between stages.

Checkpoint states are ``requested -> approved | rejected``. Several items may
share a gated stage key, so checkpoints belong to items: the latest checkpoint
for an item is authoritative and older ones are kept as audit history. An item
counts as approved only while the approved checkpoint matches its current
generation and output, so regenerating a gated item always needs a fresh
decision.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from autorun.core.exceptions import ApprovalStateError, JobNotFoundError, StaleDecisionError
from autorun.jobs.models import ERROR_ITEM_STATUSES, ApprovalCheckpointRecord, ItemRecord, JobRecord
from autorun.storage.jobs_repo import JobsRepository

logger = logging.getLogger(__name__)

GateAction = Literal["clear", "upstream", "request", "awaiting", "rejected", "unreachable"]
_CHECKPOINT_NAMESPACE = uuid.UUID("6f1c3f0e-8d55-4b7e-9a3e-3c1d7a2b9e41")


@dataclass(frozen=True)
class GateState:
  """Where the ladder is gated, if anywhere.

  ``upstream`` means the flagged item has not produced output yet; it may run
  but nothing after it may. Every other non-clear action blocks the item too.
  """

  action: GateAction
  gate_index: int | None = None
  item: ItemRecord | None = None
  checkpoint: ApprovalCheckpointRecord | None = None

  @property
  def clear(self) -> bool:
    return self.action == "clear"

  @property
  def blocks_progress(self) -> bool:
    """True when no further work can happen until a human acts."""
    return self.action in {"awaiting", "rejected", "unreachable"}

  def allows(self, index: int) -> bool:
    return self.gate_index is None or index <= self.gate_index


def checkpoint_id_for(job_id: str, stage_key: str, item_id: str, generation: int, artifact_ref: str | None) -> str:
  """Derive a stable id so concurrent requests for one proposal collapse into one checkpoint."""
  return str(uuid.uuid5(_CHECKPOINT_NAMESPACE, f"{job_id}|{stage_key}|{item_id}|{generation}|{artifact_ref or ''}"))


def proposal_id(job_id: str, item: ItemRecord) -> str:
  """Checkpoint id for the item's current output."""
  return checkpoint_id_for(job_id, item.stage_key or "", item.item_id, item.generation, item.output_ref)


def latest_by_item(checkpoints: Iterable[ApprovalCheckpointRecord]) -> dict[str, ApprovalCheckpointRecord]:
  latest: dict[str, ApprovalCheckpointRecord] = {}
  for checkpoint in checkpoints:
    latest[checkpoint.item_id] = checkpoint
  return latest


def inspect_gate(job: JobRecord, items: Iterable[ItemRecord], checkpoints: Iterable[ApprovalCheckpointRecord]) -> GateState:
  """Find the lowest flagged item without an approval for its current artifact."""
  latest = latest_by_item(checkpoints)
  for item in sorted(items, key=lambda candidate: candidate.index):
    if item.status == "skipped" or not job.policy.requires_approval(item.stage_key):
      continue
    checkpoint = latest.get(item.item_id)
    if item.status in ERROR_ITEM_STATUSES:
      return GateState(action="unreachable", gate_index=item.index, item=item, checkpoint=checkpoint)
    if item.status != "done":
      return GateState(action="upstream", gate_index=item.index, item=item, checkpoint=checkpoint)
    if checkpoint is None or checkpoint.checkpoint_id != proposal_id(job.job_id, item):
      return GateState(action="request", gate_index=item.index, item=item, checkpoint=checkpoint)
    if checkpoint.decision == "approved":
      continue
    if checkpoint.decision == "rejected":
      return GateState(action="rejected", gate_index=item.index, item=item, checkpoint=checkpoint)
    return GateState(action="awaiting", gate_index=item.index, item=item, checkpoint=checkpoint)
  return GateState(action="clear")


class ApprovalGate:
  """Requests, records and enforces approval decisions for a job."""

  def __init__(self, repo: JobsRepository) -> None:
    self._repo = repo

  async def evaluate(self, job: JobRecord, items: list[ItemRecord], *, now: datetime) -> tuple[GateState, JobRecord]:
    """Inspect the gate and act on it: request approval, or auto-approve per policy.

    Returns the resulting gate state and the refreshed job record.
    """
    handled: set[str] = set()
    while True:
      checkpoints = await self._repo.list_checkpoints(job.job_id)
      state = inspect_gate(job, items, checkpoints)
      if state.action == "awaiting" and not job.awaiting_approval:
        # A previous caller created the checkpoint but did not flag the job yet.
        job = await self._flag_awaiting(job, state.checkpoint, now=now)
      if state.action != "request":
        return state, job
      assert state.item is not None
      # Each pass settles one item, so an item coming back means its checkpoint never landed.
      if state.item.item_id in handled:
        raise ApprovalStateError(f"Checkpoint for item {state.item.index} of job {job.job_id} could not be recorded.")
      handled.add(state.item.item_id)
      if job.policy.auto_approve:
        job = await self._auto_approve(job, state.item, now=now)
        continue
      await self.request(job, state.item, now=now)
      refreshed = await self._repo.get_job(job.job_id)
      if refreshed is None:
        raise JobNotFoundError(f"Job {job.job_id} not found.")
      job = refreshed

  async def request(self, job: JobRecord, item: ItemRecord, *, now: datetime) -> ApprovalCheckpointRecord:
    """Open a checkpoint for the item's current artifact and flag the job as awaiting."""
    stage_key = item.stage_key or ""
    checkpoint_id = proposal_id(job.job_id, item)
    latest = await self._repo.latest_checkpoint(job.job_id, item.item_id)
    if latest is not None and latest.decision == "rejected" and latest.checkpoint_id == checkpoint_id:
      raise ApprovalStateError(f"Stage '{stage_key}' was rejected; a fresh proposal is required before requesting approval again.")

    checkpoint = ApprovalCheckpointRecord(
      checkpoint_id=checkpoint_id,
      job_id=job.job_id,
      stage_key=stage_key,
      item_id=item.item_id,
      pending_artifact_ref=item.output_ref,
      requested_at=now,
    )
    if await self._repo.create_checkpoint(checkpoint):
      logger.info("Approval requested job_id=%s stage=%s artifact=%s", job.job_id, stage_key, item.output_ref)
      await self._repo.append_event(job_id=job.job_id, event_type="approval_requested", message=f"Approval requested for stage '{stage_key}'.", now=now, payload={"artifactRef": item.output_ref})
    else:
      checkpoint = await self._repo.latest_checkpoint(job.job_id, item.item_id) or checkpoint
    await self._flag_awaiting(job, checkpoint, now=now)
    return checkpoint

  async def decide(self, job_id: str, stage_key: str, *, approved: bool, note: str | None, now: datetime) -> JobRecord:
    """Resolve the open checkpoint for the artifact the job is waiting on."""
    job = await self._repo.get_job(job_id)
    if job is None:
      raise JobNotFoundError(f"Job {job_id} not found.")
    if not job.awaiting_approval or job.approval_required_for != stage_key:
      raise StaleDecisionError(f"Job {job_id} is not awaiting approval for stage '{stage_key}'.")

    latest = latest_by_item(await self._repo.list_checkpoints(job_id))
    checkpoint = next(
      (candidate for candidate in latest.values() if candidate.stage_key == stage_key and candidate.decision is None and candidate.pending_artifact_ref == job.pending_artifact_ref),
      None,
    )
    if checkpoint is None:
      raise StaleDecisionError(f"No open checkpoint matches stage '{stage_key}' for job {job_id}.")

    decision = "approved" if approved else "rejected"
    decided = await self._repo.decide_checkpoint(checkpoint.checkpoint_id, decision=decision, note=note, now=now)
    if decided is None:
      # Another caller decided first.
      raise StaleDecisionError(f"Checkpoint for stage '{stage_key}' was already decided.")

    logger.info("Approval decided job_id=%s stage=%s decision=%s", job_id, stage_key, decision)
    await self._repo.append_event(job_id=job_id, event_type=f"approval_{decision}", message=f"Stage '{stage_key}' {decision}." + (f" Note: {note}" if note else ""), now=now)

    if approved:
      updated = await self._clear_awaiting(job, now=now, pin=(stage_key, checkpoint.pending_artifact_ref))
    else:
      updated = await self._reject(job, checkpoint, now=now)
    return updated

  async def _auto_approve(self, job: JobRecord, item: ItemRecord, *, now: datetime) -> JobRecord:
    stage_key = item.stage_key or ""
    checkpoint = ApprovalCheckpointRecord(
      checkpoint_id=proposal_id(job.job_id, item),
      job_id=job.job_id,
      stage_key=stage_key,
      item_id=item.item_id,
      pending_artifact_ref=item.output_ref,
      requested_at=now,
      decision="approved",
      decided_at=now,
      note="auto-approved",
    )
    if await self._repo.create_checkpoint(checkpoint):
      logger.info("Auto-approved job_id=%s stage=%s artifact=%s", job.job_id, stage_key, item.output_ref)
      await self._repo.append_event(job_id=job.job_id, event_type="approval_approved", message=f"Stage '{stage_key}' auto-approved.", now=now)
    return await self._clear_awaiting(job, now=now, pin=(stage_key, item.output_ref))

  async def _flag_awaiting(self, job: JobRecord, checkpoint: ApprovalCheckpointRecord | None, *, now: datetime) -> JobRecord:
    if checkpoint is None:
      return job
    updated = await self._repo.patch_job(job.job_id, {"awaiting_approval": True, "approval_required_for": checkpoint.stage_key, "pending_artifact_ref": checkpoint.pending_artifact_ref}, now=now)
    if updated is None:
      raise JobNotFoundError(f"Job {job.job_id} not found.")
    return updated

  async def _clear_awaiting(self, job: JobRecord, *, now: datetime, pin: tuple[str, str | None]) -> JobRecord:
    stage_key, artifact_ref = pin
    pinned = dict(job.pinned_inputs)
    if artifact_ref:
      pinned[stage_key] = artifact_ref
    updated = await self._repo.patch_job(job.job_id, {"awaiting_approval": False, "approval_required_for": None, "pending_artifact_ref": None, "pinned_inputs": pinned}, now=now)
    if updated is None:
      raise JobNotFoundError(f"Job {job.job_id} not found.")
    return updated

  async def _reject(self, job: JobRecord, checkpoint: ApprovalCheckpointRecord, *, now: datetime) -> JobRecord:
    items = await self._repo.list_items(job.job_id)
    gated = next((item for item in items if item.item_id == checkpoint.item_id), None)
    if gated is not None:
      # The item reruns on a later tick and its new output becomes the fresh proposal.
      await self._repo.reset_items(job.job_id, from_statuses=("done",), target_status="needs_regen", now=now, indexes=(gated.index,))

    updated = await self._repo.patch_job(job.job_id, {"awaiting_approval": False, "approval_required_for": None, "pending_artifact_ref": None}, now=now)
    if updated is None:
      raise JobNotFoundError(f"Job {job.job_id} not found.")

    if job.policy.on_reject == "pause":
      paused = await self._repo.transition_job(job.job_id, target="paused", allowed_from=("queued", "running"), now=now, stop_reason="approval_rejected")
      if paused is not None:
        logger.info("Job paused after rejection job_id=%s stage=%s", job.job_id, checkpoint.stage_key)

    recomputed = await self._repo.recompute_counters(job.job_id, now=now)
    return recomputed or updated
