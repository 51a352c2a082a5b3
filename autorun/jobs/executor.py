"""Step executor: one external generation call per claimed unit."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from autorun.core.exceptions import OutputValidationError
from autorun.jobs.dispatch import CHUNK_PROVIDER_KEY, GenerationProvider, GenerationRequest, ProviderRegistry
from autorun.jobs.models import ChunkRecord, ItemRecord, ItemStatus, JobRecord

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 2000


@dataclass(frozen=True)
class StepOutcome:
  """Result of executing one unit; never raised, always returned."""

  status: ItemStatus
  output_ref: str | None = None
  error: str | None = None

  @property
  def succeeded(self) -> bool:
    return self.status == "done"

  @property
  def failed(self) -> bool:
    return self.status in {"failed", "failed_validation"}


def _error_message(exc: BaseException) -> str:
  message = str(exc) or type(exc).__name__
  return message[:_MAX_ERROR_CHARS]


class StepExecutor:
  """Invokes the provider for a unit and maps every outcome to an item status.

  The executor never retries; a failure is recorded and the retry decision
  belongs to the claim protocol and explicit retry/regen actions.
  """

  def __init__(self, registry: ProviderRegistry, *, timeout_seconds: float) -> None:
    self._registry = registry
    self._timeout = timeout_seconds

  async def execute(self, job: JobRecord, item: ItemRecord, *, idempotency_key: str) -> StepOutcome:
    # A re-delivered unit that already finished keeps its output.
    if item.status == "done" and item.output_ref:
      return StepOutcome(status="done", output_ref=item.output_ref)

    try:
      provider = self._registry.resolve(job.kind)
    except ValueError as exc:
      return StepOutcome(status="failed", error=_error_message(exc))

    request = GenerationRequest(
      unit_id=item.item_id,
      kind=job.kind,
      idempotency_key=idempotency_key,
      stage_key=item.stage_key,
      title=item.title,
      job_id=job.job_id,
      project_ref=job.project_ref,
      format=job.format,
      index=item.index,
      payload=dict(item.payload),
      pinned_inputs=dict(job.pinned_inputs),
    )
    return await self._invoke(provider, request, label=f"job={job.job_id} item={item.index}")

  async def execute_chunk(self, chunk: ChunkRecord, *, idempotency_key: str) -> StepOutcome:
    if chunk.status == "done" and chunk.output_ref:
      return StepOutcome(status="done", output_ref=chunk.output_ref)

    try:
      provider = self._registry.resolve(CHUNK_PROVIDER_KEY)
    except ValueError as exc:
      return StepOutcome(status="failed", error=_error_message(exc))

    request = GenerationRequest(
      unit_id=chunk.key,
      kind=CHUNK_PROVIDER_KEY,
      idempotency_key=idempotency_key,
      index=chunk.index,
      payload={"documentId": chunk.document_id, "versionId": chunk.version_id, "content": chunk.content},
    )
    return await self._invoke(provider, request, label=f"chunk={chunk.key}")

  async def _invoke(self, provider: GenerationProvider, request: GenerationRequest, *, label: str) -> StepOutcome:
    try:
      output_ref = await asyncio.wait_for(provider.generate(request), timeout=self._timeout)
    except TimeoutError:
      logger.warning("Generation timed out after %.1fs %s", self._timeout, label)
      return StepOutcome(status="failed", error=f"Generation timed out after {self._timeout:g}s")
    except OutputValidationError as exc:
      logger.info("Generation output failed validation %s: %s", label, exc)
      return StepOutcome(status="failed_validation", error=_error_message(exc))
    except Exception as exc:  # noqa: BLE001
      logger.warning("Generation failed %s error_type=%s: %s", label, type(exc).__name__, exc)
      return StepOutcome(status="failed", error=_error_message(exc))

    return StepOutcome(status="done", output_ref=output_ref)
