"""Conditional-write behavior of the in-memory store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from autorun.jobs.models import ItemRecord, JobRecord
from autorun.storage.jobs_repo import DuplicateJobError
from autorun.storage.memory_jobs_repo import InMemoryJobsRepository

NOW = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)
LATER = NOW + timedelta(seconds=30)


def _job(job_id: str = "job-1", *, idempotency_key: str | None = None) -> JobRecord:
  return JobRecord(job_id=job_id, kind="series_scripts", project_ref="proj-1", status="queued", total_count=2, created_at=NOW, updated_at=NOW, idempotency_key=idempotency_key)


def _items(job_id: str = "job-1") -> list[ItemRecord]:
  return [ItemRecord(item_id=f"{job_id}-item-{index}", job_id=job_id, index=index, status="queued", created_at=NOW, updated_at=NOW) for index in range(2)]


@pytest.fixture
async def seeded() -> InMemoryJobsRepository:
  repo = InMemoryJobsRepository()
  await repo.create_job(_job(idempotency_key="abc"), _items())
  return repo


@pytest.mark.anyio
async def test_duplicate_idempotency_key_is_rejected(seeded: InMemoryJobsRepository) -> None:
  with pytest.raises(DuplicateJobError):
    await seeded.create_job(_job("job-2", idempotency_key="abc"), _items("job-2"))


@pytest.mark.anyio
async def test_only_one_claim_wins(seeded: InMemoryJobsRepository) -> None:
  first = await seeded.claim_item("job-1-item-0", claim_key="a", now=NOW, expires_at=LATER, max_attempts=3)
  second = await seeded.claim_item("job-1-item-0", claim_key="b", now=NOW, expires_at=LATER, max_attempts=3)
  assert first is not None and first.attempts == 1
  assert second is None


@pytest.mark.anyio
async def test_completion_requires_the_current_claim(seeded: InMemoryJobsRepository) -> None:
  await seeded.claim_item("job-1-item-0", claim_key="a", now=NOW, expires_at=LATER, max_attempts=3)
  # Lease lapses and another caller takes over.
  await seeded.claim_item("job-1-item-0", claim_key="b", now=LATER + timedelta(seconds=1), expires_at=LATER + timedelta(seconds=31), max_attempts=3)

  assert await seeded.complete_item("job-1-item-0", claim_key="a", status="done", now=LATER, output_ref="ref://a") is None
  finished = await seeded.complete_item("job-1-item-0", claim_key="b", status="done", now=LATER, output_ref="ref://b")
  assert finished is not None and finished.output_ref == "ref://b"


@pytest.mark.anyio
async def test_transition_is_conditional_on_source_status(seeded: InMemoryJobsRepository) -> None:
  assert await seeded.transition_job("job-1", target="running", allowed_from=("paused",), now=NOW) is None
  running = await seeded.transition_job("job-1", target="running", allowed_from=("queued",), now=NOW)
  assert running is not None and running.started_at == NOW


@pytest.mark.anyio
async def test_counters_are_derived_from_items(seeded: InMemoryJobsRepository) -> None:
  claimed = await seeded.claim_item("job-1-item-0", claim_key="a", now=NOW, expires_at=LATER, max_attempts=3)
  assert claimed is not None
  await seeded.complete_item("job-1-item-0", claim_key="a", status="done", now=NOW, output_ref="ref://0")
  job = await seeded.recompute_counters("job-1", now=NOW)
  assert job is not None
  assert (job.completed_count, job.error_count, job.current_stage_index) == (1, 0, 1)


@pytest.mark.anyio
async def test_returned_records_are_copies(seeded: InMemoryJobsRepository) -> None:
  job = await seeded.get_job("job-1")
  assert job is not None
  job.status = "completed"
  stored = await seeded.get_job("job-1")
  assert stored is not None and stored.status == "queued"
