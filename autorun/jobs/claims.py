"""Expiring-lease claims over items and chunks.

A claim is a conditional write that succeeds only while no unexpired lease
exists. Every successful claim increments ``attempts``; an abandoned lease is
re-claimable after its TTL while ``attempts < max_attempts``. Items and chunks
share this one retry discipline.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from autorun.jobs.models import CLAIMABLE_ITEM_STATUSES, ChunkRecord, ItemRecord
from autorun.storage.jobs_repo import JobsRepository
from autorun.utils.ids import claim_key, generate_caller_id

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "lease expired after {attempts} attempts"


@dataclass(frozen=True)
class LeasePolicy:
  """TTL and attempt limit applied to every claim."""

  ttl_seconds: int = 30
  max_attempts: int = 3

  def __post_init__(self) -> None:
    if self.ttl_seconds <= 0:
      raise ValueError("Claim TTL must be positive.")
    if self.max_attempts <= 0:
      raise ValueError("max_attempts must be positive.")

  def expires_at(self, now: datetime) -> datetime:
    return now + timedelta(seconds=self.ttl_seconds)


def lease_live(claim_expires_at: datetime | None, now: datetime) -> bool:
  """Return True while a lease excludes other claimants."""
  return claim_expires_at is not None and claim_expires_at > now


def is_claimable(status: str, claim_expires_at: datetime | None, attempts: int, *, now: datetime, max_attempts: int, statuses: frozenset[str] = CLAIMABLE_ITEM_STATUSES) -> bool:
  """Decide whether a unit may be leased right now."""
  if status in statuses:
    return not lease_live(claim_expires_at, now)
  # A running unit whose owner vanished is re-claimable until attempts run out.
  return status == "running" and not lease_live(claim_expires_at, now) and attempts < max_attempts


def is_lease_exhausted(status: str, claim_expires_at: datetime | None, attempts: int, *, now: datetime, max_attempts: int) -> bool:
  """A running unit whose lease expired with no attempts left."""
  return status == "running" and not lease_live(claim_expires_at, now) and attempts >= max_attempts


class WorkClaimer:
  """Leases items and chunks for one caller.

  Each tick invocation gets its own caller id, so two overlapping ticks never
  share a claim key even when they run in the same process.
  """

  def __init__(self, repo: JobsRepository, policy: LeasePolicy, *, caller_id: str | None = None) -> None:
    self._repo = repo
    self._policy = policy
    self.caller_id = caller_id or generate_caller_id()

  def key_for(self, unit_id: str, attempts: int) -> str:
    return claim_key(unit_id, attempts + 1, self.caller_id)

  async def claim_item(self, item: ItemRecord, *, now: datetime) -> ItemRecord | None:
    """Lease one item; returns the leased record, or None when another caller owns it."""
    key = self.key_for(item.item_id, item.attempts)
    claimed = await self._repo.claim_item(item.item_id, claim_key=key, now=now, expires_at=self._policy.expires_at(now), max_attempts=self._policy.max_attempts)
    if claimed is None:
      logger.debug("Claim lost job_id=%s item_index=%s caller=%s", item.job_id, item.index, self.caller_id)
    return claimed

  async def claim_chunk(self, chunk: ChunkRecord, *, now: datetime) -> ChunkRecord | None:
    key = self.key_for(chunk.key, chunk.attempts)
    claimed = await self._repo.claim_chunk(chunk.document_id, chunk.version_id, chunk.index, claim_key=key, now=now, expires_at=self._policy.expires_at(now), max_attempts=self._policy.max_attempts)
    if claimed is None:
      logger.debug("Claim lost chunk=%s caller=%s", chunk.key, self.caller_id)
    return claimed
