"""Progress and ETA estimation derived purely from item timestamps."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from autorun.jobs.models import ERROR_ITEM_STATUSES, FINISHED_ITEM_STATUSES, ItemRecord, JobRecord

# ETA is withheld until this many steps finished; one sample is too noisy.
MIN_SAMPLES_FOR_ETA = 2


@dataclass(frozen=True)
class ProgressEstimate:
  """Snapshot of job progress; safe to recompute on every observation."""

  total: int
  completed: int
  failed: int
  remaining: int
  elapsed_seconds: float
  average_step_seconds: float | None
  eta_seconds: float | None

  @property
  def percent(self) -> float:
    if self.total <= 0:
      return 100.0
    return round(100.0 * (self.completed + self.failed) / self.total, 1)


def estimate_progress(job: JobRecord, items: Iterable[ItemRecord], *, now: datetime) -> ProgressEstimate:
  """Estimate progress for a job.

  The average step duration comes from consecutive completion timestamps,
  starting at job creation. Below two completed steps it falls back to
  elapsed / completed.
  """
  items = list(items)
  elapsed = max((now - job.created_at).total_seconds(), 0.0)
  completion_times = sorted(item.completed_at for item in items if item.status == "done" and item.completed_at is not None)
  completed = sum(1 for item in items if item.status in FINISHED_ITEM_STATUSES)
  failed = sum(1 for item in items if item.status in ERROR_ITEM_STATUSES)
  remaining = sum(1 for item in items if item.status not in FINISHED_ITEM_STATUSES and item.status not in ERROR_ITEM_STATUSES)

  average: float | None = None
  if len(completion_times) >= MIN_SAMPLES_FOR_ETA:
    timestamps = [job.created_at, *completion_times]
    gaps = [max((later - earlier).total_seconds(), 0.0) for earlier, later in zip(timestamps, timestamps[1:], strict=False)]
    average = sum(gaps) / len(gaps)
  elif completed > 0:
    average = elapsed / completed

  eta: float | None = None
  if average is not None and len(completion_times) >= MIN_SAMPLES_FOR_ETA:
    eta = average * remaining

  return ProgressEstimate(total=len(items) or job.total_count, completed=completed, failed=failed, remaining=remaining, elapsed_seconds=elapsed, average_step_seconds=average, eta_seconds=eta)
