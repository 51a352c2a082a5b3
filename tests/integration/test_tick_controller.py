"""Tick controller behavior against the in-memory store."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import timedelta
from typing import TYPE_CHECKING

import pytest

from autorun.config import Settings
from autorun.jobs.dispatch import GenerationRequest, ProviderRegistry
from autorun.jobs.models import JobPolicy
from autorun.jobs.tick import TickResult
from autorun.services.jobs import JobService
from autorun.storage.memory_jobs_repo import InMemoryJobsRepository

if TYPE_CHECKING:
  from tests.conftest import FakeClock, ScriptedProvider


async def _tick_until_done(service: JobService, job_id: str, *, max_ticks: int = 50) -> list[TickResult]:
  results: list[TickResult] = []
  for _ in range(max_ticks):
    result = await service.tick(job_id)
    results.append(result)
    if result.done:
      return results
  raise AssertionError(f"Job {job_id} did not finish within {max_ticks} ticks")


@pytest.mark.anyio
async def test_five_stage_job_finishes_in_exactly_five_ticks(service: JobService, provider: ScriptedProvider) -> None:
  started = await service.start(kind="document_autorun", project_ref="proj-1", options={"format": "documentary"})
  assert started.job.total_count == 5

  results = await _tick_until_done(service, started.job.job_id)

  assert len(results) == 5
  assert [result.processed_count for result in results] == [1, 1, 1, 1, 1]
  final = results[-1].job
  assert final.status == "completed"
  assert (final.completed_count, final.error_count, final.tick_count) == (5, 0, 5)
  assert [call.stage_key for call in provider.calls] == ["idea", "concept_brief", "market_sheet", "documentary_outline", "deck"]


@pytest.mark.anyio
async def test_ticking_a_finished_job_is_a_no_op(service: JobService, provider: ScriptedProvider) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 1})
  await _tick_until_done(service, started.job.job_id)

  again = await service.tick(started.job.job_id)

  assert again.done
  assert again.processed_count == 0
  assert again.job.tick_count == 1
  assert len(provider.calls) == 1


@pytest.mark.anyio
async def test_job_without_items_starts_completed(service: JobService) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 0})
  assert started.job.status == "completed"

  result = await service.tick(started.job.job_id)
  assert result.done
  assert result.processed_count == 0


@pytest.mark.anyio
async def test_concurrent_ticks_execute_each_item_exactly_once(service: JobService, provider: ScriptedProvider) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 4})
  job_id = started.job.job_id

  results = await asyncio.gather(*(service.tick(job_id) for _ in range(8)))
  first_wave = [call.index for call in provider.calls]
  assert len(first_wave) == len(set(first_wave))
  assert sum(result.processed_count for result in results) == len(first_wave)

  await _tick_until_done(service, job_id)
  assert Counter(call.index for call in provider.calls) == {0: 1, 1: 1, 2: 1, 3: 1}


@pytest.mark.anyio
async def test_max_items_per_tick_bounds_each_pass(service: JobService) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", policy=JobPolicy(max_items_per_tick=3), options={"episode_count": 5})

  first = await service.tick(started.job.job_id)
  second = await service.tick(started.job.job_id)

  assert (first.processed_count, second.processed_count) == (3, 2)
  assert second.done


@pytest.mark.anyio
async def test_one_failing_item_among_k_leaves_the_rest_done(service: JobService, provider: ScriptedProvider) -> None:
  provider.fail_indexes = {2}
  started = await service.start(kind="trailer_clips", project_ref="proj-1", options={"units": [{"title": f"Shot {n}"} for n in range(5)]})

  results = await _tick_until_done(service, started.job.job_id)

  assert results[-1].job.status == "completed"
  statuses = [item.status for item in await service.repo.list_items(started.job.job_id)]
  assert statuses.count("failed") == 1
  assert statuses.count("done") == 4


@pytest.mark.anyio
async def test_partial_failure_still_completes_the_job(service: JobService, provider: ScriptedProvider) -> None:
  provider.fail_indexes = {1}
  provider.invalid_indexes = {2}
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 4})

  results = await _tick_until_done(service, started.job.job_id)

  final = results[-1].job
  assert final.status == "completed"
  assert (final.completed_count, final.error_count) == (2, 2)
  items = await service.repo.list_items(started.job.job_id)
  assert [item.status for item in items] == ["done", "failed", "failed_validation", "done"]
  assert items[1].error == "provider exploded on unit 1"


@pytest.mark.anyio
async def test_stop_on_first_fail_fails_the_job(service: JobService, provider: ScriptedProvider) -> None:
  provider.fail_indexes = {0}
  started = await service.start(kind="series_scripts", project_ref="proj-1", policy=JobPolicy(stop_on_first_fail=True, max_items_per_tick=3), options={"episode_count": 3})

  result = await service.tick(started.job.job_id)

  assert result.done
  assert result.processed_count == 1
  assert result.job.status == "failed"
  assert result.job.stop_reason == "stop_on_first_fail"
  assert "provider exploded" in (result.job.last_error or "")
  items = await service.repo.list_items(started.job.job_id)
  assert [item.status for item in items] == ["failed", "queued", "queued"]


@pytest.mark.anyio
async def test_abandoned_lease_is_reclaimed_after_ttl(service: JobService, repo: InMemoryJobsRepository, provider: ScriptedProvider, clock: FakeClock) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 1})
  item = started.items[0]
  # A caller claims the item and then disappears.
  crashed = await repo.claim_item(item.item_id, claim_key="crashed-caller", now=clock(), expires_at=clock() + timedelta(seconds=30), max_attempts=3)
  assert crashed is not None

  blocked = await service.tick(started.job.job_id)
  assert blocked.processed_count == 0
  assert not blocked.done

  clock.advance(31)
  recovered = await service.tick(started.job.job_id)

  assert recovered.processed_count == 1
  assert recovered.done
  assert recovered.job.status == "completed"
  assert provider.calls[0].idempotency_key == f"{item.item_id}:gen0"
  # The original caller's late result is discarded.
  assert await repo.complete_item(item.item_id, claim_key="crashed-caller", status="done", now=clock(), output_ref="ref://stale") is None
  items = await repo.list_items(started.job.job_id)
  assert items[0].attempts == 2
  assert items[0].output_ref != "ref://stale"


@pytest.mark.anyio
async def test_lease_exhaustion_marks_the_item_failed(service: JobService, repo: InMemoryJobsRepository, provider: ScriptedProvider, clock: FakeClock) -> None:
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 1})
  item_id = started.items[0].item_id
  for attempt in range(3):
    claimed = await repo.claim_item(item_id, claim_key=f"lost-{attempt}", now=clock(), expires_at=clock() + timedelta(seconds=30), max_attempts=3)
    assert claimed is not None
    clock.advance(31)

  result = await service.tick(started.job.job_id)

  assert result.done
  assert result.job.status == "completed"
  assert result.job.error_count == 1
  items = await repo.list_items(started.job.job_id)
  assert items[0].status == "failed"
  assert items[0].error == "lease expired after 3 attempts"
  assert provider.calls == []


@pytest.mark.anyio
async def test_progress_tracks_completed_items(service: JobService, clock: FakeClock, provider: ScriptedProvider) -> None:
  provider.step_seconds = 10
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 4})
  await service.tick(started.job.job_id)
  await service.tick(started.job.job_id)

  estimate = await service.progress(started.job.job_id)

  assert (estimate.completed, estimate.remaining) == (2, 2)
  assert estimate.average_step_seconds == 10.0
  assert estimate.eta_seconds == 20.0


class _StallFirstCall:
  """Provider whose first call outlives its lease while another caller takes the item over."""

  def __init__(self, clock: FakeClock) -> None:
    self.clock = clock
    self.keys: list[str] = []
    self.release = asyncio.Event()

  async def generate(self, request: GenerationRequest) -> str:
    self.keys.append(request.idempotency_key)
    if len(self.keys) == 1:
      self.clock.advance(31)
      await self.release.wait()
    return f"ref://{request.unit_id}/{len(self.keys)}"


@pytest.mark.anyio
async def test_reclaimed_item_reuses_the_provider_idempotency_key(repo: InMemoryJobsRepository, settings: Settings, clock: FakeClock) -> None:
  provider = _StallFirstCall(clock)
  service = JobService(repo, settings, registry=ProviderRegistry({}, default=provider), clock=clock)
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 1})
  item_id = started.items[0].item_id

  stalled = asyncio.create_task(service.tick(started.job.job_id))
  while not provider.keys:
    await asyncio.sleep(0)
  takeover = await service.tick(started.job.job_id)
  provider.release.set()
  await stalled

  assert takeover.processed_count == 1
  assert takeover.job.status == "completed"
  assert provider.keys == [f"{item_id}:gen0", f"{item_id}:gen0"]
  items = await repo.list_items(started.job.job_id)
  assert items[0].attempts == 2
  assert items[0].output_ref == f"ref://{item_id}/2"


@pytest.mark.anyio
async def test_regen_moves_the_item_to_a_new_idempotency_key(service: JobService, provider: ScriptedProvider) -> None:
  provider.fail_indexes = {0}
  started = await service.start(kind="series_scripts", project_ref="proj-1", options={"episode_count": 1})
  item_id = started.items[0].item_id
  failed = await service.tick(started.job.job_id)
  assert failed.job.error_count == 1

  provider.fail_indexes = set()
  _, reset = await service.regen_items(started.job.job_id)
  assert reset == [0]
  rerun = await service.tick(started.job.job_id)

  assert rerun.job.status == "completed"
  assert [call.idempotency_key for call in provider.calls] == [f"{item_id}:gen0", f"{item_id}:gen1"]
