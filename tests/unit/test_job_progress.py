from __future__ import annotations

from datetime import UTC, datetime, timedelta

from autorun.jobs.models import ItemRecord, JobRecord
from autorun.jobs.progress import estimate_progress

START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)


def _job(total: int) -> JobRecord:
  return JobRecord(job_id="job-1", kind="series_scripts", project_ref="proj-1", status="running", total_count=total, created_at=START, updated_at=START)


def _items(total: int, done_after: list[float], *, failed: tuple[int, ...] = ()) -> list[ItemRecord]:
  items: list[ItemRecord] = []
  for index in range(total):
    status = "queued"
    completed_at = None
    if index < len(done_after):
      status = "done"
      completed_at = START + timedelta(seconds=done_after[index])
    if index in failed:
      status = "failed"
    items.append(ItemRecord(item_id=f"item-{index}", job_id="job-1", index=index, status=status, created_at=START, updated_at=START, completed_at=completed_at))  # type: ignore[arg-type]
  return items


def test_eta_is_withheld_until_two_steps_finished() -> None:
  estimate = estimate_progress(_job(5), _items(5, [10.0]), now=START + timedelta(seconds=12))
  assert estimate.completed == 1
  assert estimate.average_step_seconds == 12.0
  assert estimate.eta_seconds is None


def test_eta_uses_average_gap_between_completions() -> None:
  estimate = estimate_progress(_job(5), _items(5, [10.0, 20.0, 30.0]), now=START + timedelta(seconds=30))
  assert estimate.average_step_seconds == 10.0
  assert estimate.remaining == 2
  assert estimate.eta_seconds == 20.0
  assert estimate.percent == 60.0


def test_failed_items_count_toward_percent_but_not_remaining() -> None:
  estimate = estimate_progress(_job(4), _items(4, [5.0, 10.0], failed=(2,)), now=START + timedelta(seconds=10))
  assert estimate.failed == 1
  assert estimate.remaining == 1
  assert estimate.percent == 75.0


def test_eta_does_not_grow_at_constant_step_time() -> None:
  """Observed with a steady pace, each new completion never increases the estimate."""
  etas: list[float] = []
  for done in range(2, 6):
    estimate = estimate_progress(_job(6), _items(6, [10.0 * (n + 1) for n in range(done)]), now=START + timedelta(seconds=10.0 * done))
    assert estimate.eta_seconds is not None
    etas.append(estimate.eta_seconds)
  assert etas == sorted(etas, reverse=True)


def test_empty_job_reports_full_progress() -> None:
  estimate = estimate_progress(_job(0), [], now=START)
  assert estimate.percent == 100.0
  assert estimate.eta_seconds is None
