from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from autorun.core.exceptions import ItemExecutionError, OutputValidationError
from autorun.jobs.dispatch import DryRunProvider, GenerationRequest, ProviderRegistry
from autorun.jobs.executor import StepExecutor
from autorun.jobs.models import ChunkRecord, ItemRecord, JobRecord

NOW = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)


class _RaisingProvider:
  def __init__(self, exc: BaseException) -> None:
    self.exc = exc

  async def generate(self, request: GenerationRequest) -> str:
    raise self.exc


class _SlowProvider:
  async def generate(self, request: GenerationRequest) -> str:
    await asyncio.sleep(5)
    return "never"


class _CountingProvider:
  def __init__(self) -> None:
    self.requests: list[GenerationRequest] = []

  async def generate(self, request: GenerationRequest) -> str:
    self.requests.append(request)
    return f"ref://{request.unit_id}"


def _job() -> JobRecord:
  return JobRecord(job_id="job-1", kind="document_autorun", project_ref="proj-1", status="running", total_count=1, created_at=NOW, updated_at=NOW, format="film", pinned_inputs={"idea": "ref://idea"})


def _item(**overrides: object) -> ItemRecord:
  values: dict[str, object] = {"item_id": "item-1", "job_id": "job-1", "index": 0, "status": "running", "created_at": NOW, "updated_at": NOW, "stage_key": "concept_brief"}
  values.update(overrides)
  return ItemRecord(**values)  # type: ignore[arg-type]


def _executor(provider: object, timeout: float = 1.0) -> StepExecutor:
  return StepExecutor(ProviderRegistry({}, default=provider), timeout_seconds=timeout)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_success_maps_to_done_with_output_ref() -> None:
  provider = _CountingProvider()
  outcome = await _executor(provider).execute(_job(), _item(), idempotency_key="item-1:1:abc")
  assert outcome.status == "done"
  assert outcome.output_ref == "ref://item-1"
  # The provider sees the idempotency key and the pinned upstream inputs.
  assert provider.requests[0].idempotency_key == "item-1:1:abc"
  assert provider.requests[0].pinned_inputs == {"idea": "ref://idea"}


@pytest.mark.anyio
async def test_hard_failure_maps_to_failed() -> None:
  outcome = await _executor(_RaisingProvider(ItemExecutionError("quota exhausted"))).execute(_job(), _item(), idempotency_key="k")
  assert outcome.status == "failed"
  assert outcome.error == "quota exhausted"


@pytest.mark.anyio
async def test_validation_failure_is_kept_distinct() -> None:
  outcome = await _executor(_RaisingProvider(OutputValidationError("missing scenes"))).execute(_job(), _item(), idempotency_key="k")
  assert outcome.status == "failed_validation"
  assert outcome.failed


@pytest.mark.anyio
async def test_unexpected_exception_never_escapes() -> None:
  outcome = await _executor(_RaisingProvider(RuntimeError())).execute(_job(), _item(), idempotency_key="k")
  assert outcome.status == "failed"
  assert outcome.error == "RuntimeError"


@pytest.mark.anyio
async def test_timeout_maps_to_failed() -> None:
  outcome = await _executor(_SlowProvider(), timeout=0.01).execute(_job(), _item(), idempotency_key="k")
  assert outcome.status == "failed"
  assert "timed out" in (outcome.error or "")


@pytest.mark.anyio
async def test_already_done_item_is_not_re_executed() -> None:
  provider = _CountingProvider()
  outcome = await _executor(provider).execute(_job(), _item(status="done", output_ref="ref://old"), idempotency_key="k")
  assert outcome.output_ref == "ref://old"
  assert provider.requests == []


@pytest.mark.anyio
async def test_missing_provider_fails_the_unit() -> None:
  executor = StepExecutor(ProviderRegistry({}), timeout_seconds=1.0)
  outcome = await executor.execute(_job(), _item(), idempotency_key="k")
  assert outcome.status == "failed"
  assert "No generation provider" in (outcome.error or "")


@pytest.mark.anyio
async def test_chunk_execution_uses_chunk_key_as_unit() -> None:
  chunk = ChunkRecord(document_id="doc", version_id="v1", index=2, key="doc:v1:2", status="running", char_count=5, created_at=NOW, updated_at=NOW, content="hello")
  outcome = await _executor(DryRunProvider()).execute_chunk(chunk, idempotency_key="doc:v1:2:1:abc")
  assert outcome.output_ref == "dryrun://document_chunk/doc:v1:2/doc:v1:2:1:abc"
