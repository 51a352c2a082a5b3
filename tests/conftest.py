"""Shared fixtures: a controllable clock, scripted providers and an in-memory service."""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

# Keep app import free of local .env surprises.
os.environ.setdefault("AUTORUN_ALLOWED_ORIGINS", "http://localhost")
os.environ.setdefault("AUTORUN_STORAGE_BACKEND", "memory")

from autorun.config import Settings  # noqa: E402
from autorun.core.exceptions import ItemExecutionError, OutputValidationError  # noqa: E402
from autorun.jobs.dispatch import GenerationRequest, ProviderRegistry  # noqa: E402
from autorun.services.jobs import JobService  # noqa: E402
from autorun.storage.memory_jobs_repo import InMemoryJobsRepository  # noqa: E402

START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


class FakeClock:
  """Clock that only moves when a test (or a provider) advances it."""

  def __init__(self, start: datetime = START) -> None:
    self.now = start

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> datetime:
    self.now = self.now + timedelta(seconds=seconds)
    return self.now


@dataclass
class ScriptedProvider:
  """Generation provider whose outcome per unit index is scripted by the test."""

  clock: FakeClock | None = None
  step_seconds: float = 0.0
  fail_indexes: set[int] = field(default_factory=set)
  invalid_indexes: set[int] = field(default_factory=set)
  calls: list[GenerationRequest] = field(default_factory=list)

  async def generate(self, request: GenerationRequest) -> str:
    self.calls.append(request)
    # Yield so concurrent ticks interleave between claim and completion.
    await asyncio.sleep(0)
    if self.clock is not None and self.step_seconds:
      self.clock.advance(self.step_seconds)
    if request.index in self.fail_indexes:
      raise ItemExecutionError(f"provider exploded on unit {request.index}")
    if request.index in self.invalid_indexes:
      raise OutputValidationError(f"output for unit {request.index} failed validation")
    return f"ref://{request.unit_id}/{len(self.calls)}"

  def calls_for(self, index: int) -> list[GenerationRequest]:
    return [call for call in self.calls if call.index == index]


def build_settings(**overrides: object) -> Settings:
  base = Settings(
    environment="test",
    debug=False,
    allowed_origins=("http://localhost",),
    log_dir="./logs",
    log_max_bytes=1_048_576,
    log_backup_count=1,
    log_http_4xx=False,
    storage_backend="memory",
    pg_dsn=None,
    auto_create_tables=False,
    default_format="film",
    max_items_per_tick=1,
    max_items_per_tick_limit=10,
    claim_ttl_seconds=30,
    max_attempts=3,
    executor_timeout_seconds=5.0,
    chunk_max_chars=100,
    run_loop_initial_delay=1.0,
    run_loop_max_delay=8.0,
    run_loop_backoff_factor=1.2,
    run_loop_transient_delay=3.0,
    generation_url=None,
    generation_secret=None,
  )
  return replace(base, **overrides)


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock()


@pytest.fixture
def provider(clock: FakeClock) -> ScriptedProvider:
  return ScriptedProvider(clock=clock)


@pytest.fixture
def settings() -> Settings:
  return build_settings()


@pytest.fixture
def repo() -> InMemoryJobsRepository:
  return InMemoryJobsRepository()


@pytest.fixture
def service(repo: InMemoryJobsRepository, settings: Settings, provider: ScriptedProvider, clock: FakeClock) -> JobService:
  return JobService(repo, settings, registry=ProviderRegistry({}, default=provider), clock=clock)


@pytest.fixture
async def async_client(service: JobService) -> AsyncIterator[AsyncClient]:
  from autorun.api.deps import get_job_service
  from autorun.main import app

  app.dependency_overrides[get_job_service] = lambda: service
  async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
    yield client
  app.dependency_overrides.clear()
