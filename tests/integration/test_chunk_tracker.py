"""Chunked sub-jobs: lazy creation, per-chunk retry and ordered assembly."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from autorun.core.exceptions import ChunkGroupNotFoundError
from autorun.jobs.models import ChunkRecord
from autorun.services.jobs import JobService
from autorun.storage.memory_jobs_repo import InMemoryJobsRepository
from autorun.utils.ids import chunk_key

if TYPE_CHECKING:
  from tests.conftest import FakeClock, ScriptedProvider

# Three paragraphs of 80 characters; with a 100 character limit each becomes its own chunk.
LONG_CONTENT = "\n\n".join(letter * 80 for letter in "abc")


@pytest.mark.anyio
async def test_short_content_is_not_chunked(service: JobService) -> None:
  assert await service.open_chunks("doc-1", "v1", "fits in one call") is None
  with pytest.raises(ChunkGroupNotFoundError):
    await service.chunk_status("doc-1", "v1")


@pytest.mark.anyio
async def test_open_is_idempotent(service: JobService) -> None:
  first = await service.open_chunks("doc-1", "v1", LONG_CONTENT)
  second = await service.open_chunks("doc-1", "v1", "different content entirely")
  assert first is not None and second is not None
  assert [chunk.key for chunk in first.chunks] == [chunk_key("doc-1", "v1", index) for index in range(3)]
  assert second.chunks == first.chunks


@pytest.mark.anyio
async def test_failed_chunk_regenerates_without_rerunning_done_chunks(service: JobService, provider: ScriptedProvider) -> None:
  provider.invalid_indexes = {1}
  await service.open_chunks("doc-1", "v1", LONG_CONTENT)

  first_pass = await service.tick_chunks("doc-1", "v1", max_chunks=5)
  assert first_pass.processed_count == 3
  assert first_pass.done
  assert [chunk.status for chunk in first_pass.group.chunks] == ["done", "failed_validation", "done"]
  assert await service.assemble_chunks("doc-1", "v1") is None
  done_refs = {chunk.index: chunk.output_ref for chunk in first_pass.group.chunks if chunk.status == "done"}

  provider.invalid_indexes = set()
  group, indexes = await service.regen_chunks("doc-1", "v1")
  assert indexes == [1]
  assert group.chunks[1].status == "queued"

  second_pass = await service.tick_chunks("doc-1", "v1", max_chunks=5)
  assert second_pass.processed_count == 1
  refs = await service.assemble_chunks("doc-1", "v1")
  assert refs is not None
  assert refs[0] == done_refs[0]
  assert refs[2] == done_refs[2]
  assert [len(provider.calls_for(index)) for index in range(3)] == [1, 2, 1]
  assert provider.calls_for(0)[0].payload["content"] == "a" * 80


@pytest.mark.anyio
async def test_regenerate_missing_requeues_only_unfinished_chunks(service: JobService, repo: InMemoryJobsRepository, clock: FakeClock) -> None:
  statuses = ["done", "failed", "done", "needs_regen"]
  now = clock()
  await repo.create_chunks(
    [
      ChunkRecord(document_id="doc-2", version_id="v3", index=index, key=chunk_key("doc-2", "v3", index), status=status, char_count=10, created_at=now, updated_at=now, output_ref="ref://kept" if status == "done" else None)  # type: ignore[arg-type]
      for index, status in enumerate(statuses)
    ]
  )

  group, indexes = await service.regen_chunks("doc-2", "v3")

  assert indexes == [1, 3]
  assert [chunk.status for chunk in group.chunks] == ["done", "queued", "done", "queued"]
  assert group.chunks[0].output_ref == "ref://kept"


@pytest.mark.anyio
async def test_needs_regen_chunks_wait_for_an_explicit_regen(service: JobService, repo: InMemoryJobsRepository, provider: ScriptedProvider, clock: FakeClock) -> None:
  now = clock()
  await repo.create_chunks(
    [
      ChunkRecord(document_id="doc-3", version_id="v1", index=index, key=chunk_key("doc-3", "v1", index), status=status, char_count=10, created_at=now, updated_at=now, content=f"slice {index}")  # type: ignore[arg-type]
      for index, status in enumerate(["queued", "needs_regen"])
    ]
  )

  first_pass = await service.tick_chunks("doc-3", "v1", max_chunks=5)
  assert first_pass.processed_count == 1
  assert first_pass.done
  assert [chunk.status for chunk in first_pass.group.chunks] == ["done", "needs_regen"]
  assert provider.calls_for(1) == []

  group, indexes = await service.regen_chunks("doc-3", "v1")
  assert indexes == [1]
  assert group.chunks[1].generation == 1
  second_pass = await service.tick_chunks("doc-3", "v1", max_chunks=5)
  assert second_pass.processed_count == 1
  assert [call.idempotency_key for call in provider.calls_for(1)] == [f"{chunk_key('doc-3', 'v1', 1)}:gen1"]
