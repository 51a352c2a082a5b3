"""Resumable run loop: drives a job by ticking it with backoff until it stops.

The loop keeps only a local view ({idle, running, paused, complete, failed})
layered over the job's persisted status. Losing the driving process loses
nothing: a new loop resumes from whatever the store says.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Protocol

import httpx
import msgspec

from autorun.config import Settings
from autorun.core.exceptions import InvalidTransitionError, JobNotFoundError, TransientInfraError

if TYPE_CHECKING:
  from autorun.services.jobs import JobService

logger = logging.getLogger(__name__)

RunState = Literal["idle", "running", "paused", "complete", "failed"]
Sleep = Callable[[float], Awaitable[None]]

# Persisted job status -> local loop state once ticking has ended.
_TERMINAL_RUN_STATES: dict[str, RunState] = {"completed": "complete", "failed": "failed", "paused": "paused", "stopped": "idle"}


@dataclass(frozen=True)
class TickSnapshot:
  """What the loop needs from one tick, independent of transport."""

  done: bool
  blocked: bool
  status: str
  processed_count: int
  completed_count: int
  total_count: int
  stop_reason: str | None = None


class TickClient(Protocol):
  """Transport for reaching the tick controller."""

  async def tick(self, job_id: str, *, max_items_per_tick: int | None = None) -> TickSnapshot:
    """Run one tick and return its outcome."""

  async def pause(self, job_id: str) -> None:
    """Persist a paused status."""

  async def resume(self, job_id: str) -> None:
    """Persist a running status for a paused or failed job."""

  async def stop(self, job_id: str) -> None:
    """Persist a stopped status."""


class LocalTickClient:
  """Calls the job service in-process."""

  def __init__(self, service: JobService) -> None:
    self._service = service

  async def tick(self, job_id: str, *, max_items_per_tick: int | None = None) -> TickSnapshot:
    result = await self._service.tick(job_id, max_items_per_tick=max_items_per_tick)
    job = result.job
    return TickSnapshot(done=result.done, blocked=result.blocked, status=job.status, processed_count=result.processed_count, completed_count=job.completed_count, total_count=job.total_count, stop_reason=job.stop_reason)

  async def pause(self, job_id: str) -> None:
    await self._service.pause(job_id)

  async def resume(self, job_id: str) -> None:
    await self._service.resume(job_id)

  async def stop(self, job_id: str) -> None:
    await self._service.stop(job_id)


class _JobPayload(msgspec.Struct, rename="camel"):
  status: str
  completed_count: int = 0
  total_count: int = 0
  stop_reason: str | None = None


class _TickPayload(msgspec.Struct, rename="camel"):
  done: bool
  job: _JobPayload
  processed_count: int = 0
  blocked: bool = False


class HttpTickClient:
  """Calls the HTTP API; network trouble and 5xx become ``TransientInfraError``."""

  def __init__(self, base_url: str, *, timeout_seconds: float = 150.0, transport: httpx.AsyncBaseTransport | None = None, headers: dict[str, str] | None = None) -> None:
    self._base_url = base_url.rstrip("/")
    self._timeout = timeout_seconds
    self._transport = transport
    self._headers = dict(headers or {})

  async def _post(self, path: str, payload: dict[str, Any] | None = None) -> bytes:
    url = f"{self._base_url}{path}"
    async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout, trust_env=False) as client:
      try:
        response = await client.post(url, json=payload or {}, headers=self._headers)
      except httpx.TimeoutException as exc:
        raise TransientInfraError(f"Timed out calling {path}") from exc
      except httpx.RequestError as exc:
        raise TransientInfraError(f"Request to {path} failed: {exc}") from exc

    if response.status_code == 404:
      raise JobNotFoundError(f"{path} returned 404")
    if response.status_code == 409:
      raise InvalidTransitionError(_detail(response))
    if response.status_code >= 500:
      raise TransientInfraError(f"{path} returned {response.status_code}")
    response.raise_for_status()
    return response.content

  async def tick(self, job_id: str, *, max_items_per_tick: int | None = None) -> TickSnapshot:
    body: dict[str, Any] = {}
    if max_items_per_tick is not None:
      body["maxItemsPerTick"] = max_items_per_tick
    content = await self._post(f"/v1/jobs/{job_id}/tick", body)
    try:
      payload = msgspec.json.decode(content, type=_TickPayload)
    except msgspec.DecodeError as exc:
      raise TransientInfraError(f"Malformed tick response: {exc}") from exc
    return TickSnapshot(done=payload.done, blocked=payload.blocked, status=payload.job.status, processed_count=payload.processed_count, completed_count=payload.job.completed_count, total_count=payload.job.total_count, stop_reason=payload.job.stop_reason)

  async def pause(self, job_id: str) -> None:
    await self._post(f"/v1/jobs/{job_id}/pause")

  async def resume(self, job_id: str) -> None:
    await self._post(f"/v1/jobs/{job_id}/resume")

  async def stop(self, job_id: str) -> None:
    await self._post(f"/v1/jobs/{job_id}/stop")


def _detail(response: httpx.Response) -> str:
  try:
    data = response.json()
  except ValueError:
    return response.text
  if isinstance(data, dict) and "detail" in data:
    return str(data["detail"])
  return response.text


@dataclass(frozen=True)
class BackoffPolicy:
  """Delay between ticks: grows on no-progress ticks, resets on progress."""

  initial_delay: float = 1.0
  max_delay: float = 8.0
  factor: float = 1.2
  transient_delay: float = 3.0

  @classmethod
  def from_settings(cls, settings: Settings) -> BackoffPolicy:
    return cls(initial_delay=settings.run_loop_initial_delay, max_delay=settings.run_loop_max_delay, factor=settings.run_loop_backoff_factor, transient_delay=settings.run_loop_transient_delay)

  def next_delay(self, current: float, *, progressed: bool) -> float:
    if progressed:
      return self.initial_delay
    return min(current * self.factor, self.max_delay)


class RunLoop:
  """Ticks one job until its persisted status says to stop.

  ``pause`` and ``stop`` persist the new status first and only then set the
  local abort flag, so the stored state is right even if this process exits
  straight after. In-flight ticks are never interrupted.
  """

  def __init__(self, client: TickClient, job_id: str, *, backoff: BackoffPolicy | None = None, max_items_per_tick: int | None = None, sleep: Sleep = asyncio.sleep) -> None:
    self._client = client
    self.job_id = job_id
    self._backoff = backoff or BackoffPolicy()
    self._max_items_per_tick = max_items_per_tick
    self._sleep = sleep
    self._abort_state: RunState | None = None
    self.state: RunState = "idle"
    self.reason: str | None = None
    self.ticks = 0
    self.processed_total = 0
    self.transient_errors = 0
    self.last_snapshot: TickSnapshot | None = None

  async def run(self) -> RunState:
    if self.state == "running":
      raise RuntimeError(f"Run loop for job {self.job_id} is already running.")
    self._abort_state = None
    self.state = "running"
    self.reason = None
    delay = self._backoff.initial_delay
    logger.info("Run loop start job_id=%s", self.job_id)

    while True:
      if self._abort_state is not None:
        return self._finish(self._abort_state, "aborted")

      try:
        snapshot = await self._client.tick(self.job_id, max_items_per_tick=self._max_items_per_tick)
      except JobNotFoundError:
        logger.error("Run loop job missing job_id=%s", self.job_id)
        return self._finish("failed", "job_not_found")
      except TransientInfraError as exc:
        self.transient_errors += 1
        logger.warning("Transient tick failure job_id=%s retry_in=%.1fs: %s", self.job_id, self._backoff.transient_delay, exc)
        await self._sleep(self._backoff.transient_delay)
        continue
      except Exception:
        # A single bad tick never ends the loop; only a persisted status does.
        self.transient_errors += 1
        logger.error("Unexpected tick failure job_id=%s retry_in=%.1fs", self.job_id, self._backoff.transient_delay, exc_info=True)
        await self._sleep(self._backoff.transient_delay)
        continue

      self.ticks += 1
      self.processed_total += snapshot.processed_count
      self.last_snapshot = snapshot

      if snapshot.done:
        return self._finish(_TERMINAL_RUN_STATES.get(snapshot.status, "idle"), snapshot.stop_reason or snapshot.status)
      if snapshot.blocked:
        return self._finish("paused", "awaiting_approval")

      delay = self._backoff.next_delay(delay, progressed=snapshot.processed_count > 0)
      logger.debug("Run loop sleeping job_id=%s delay=%.2fs processed=%d", self.job_id, delay, snapshot.processed_count)
      await self._sleep(delay)

  def _finish(self, state: RunState, reason: str | None) -> RunState:
    self.state = state
    self.reason = reason
    logger.info("Run loop end job_id=%s state=%s reason=%s ticks=%d processed=%d", self.job_id, state, reason, self.ticks, self.processed_total)
    return state

  async def pause(self) -> None:
    await self._client.pause(self.job_id)
    self._abort_state = "paused"
    if self.state != "running":
      self.state = "paused"

  async def stop(self) -> None:
    await self._client.stop(self.job_id)
    self._abort_state = "idle"
    if self.state != "running":
      self.state = "idle"

  async def resume(self) -> RunState:
    """Persist running again and tick from current progress; finished items are skipped."""
    await self._client.resume(self.job_id)
    return await self.run()
