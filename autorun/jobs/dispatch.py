"""Generation providers and the registry that routes job kinds to them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import msgspec

from autorun.config import Settings
from autorun.core.exceptions import ItemExecutionError, OutputValidationError

logger = logging.getLogger(__name__)

# Registry key used for chunk generation; chunks are not tied to a job kind.
CHUNK_PROVIDER_KEY = "document_chunk"


@dataclass(frozen=True)
class GenerationRequest:
  """Everything a provider needs to produce one unit of output."""

  unit_id: str
  kind: str
  idempotency_key: str
  stage_key: str | None = None
  title: str | None = None
  job_id: str | None = None
  project_ref: str | None = None
  format: str | None = None
  index: int = 0
  payload: dict[str, Any] = field(default_factory=dict)
  pinned_inputs: dict[str, str] = field(default_factory=dict)

  def to_dict(self) -> dict[str, Any]:
    return {
      "unitId": self.unit_id,
      "kind": self.kind,
      "idempotencyKey": self.idempotency_key,
      "stageKey": self.stage_key,
      "title": self.title,
      "jobId": self.job_id,
      "projectRef": self.project_ref,
      "format": self.format,
      "index": self.index,
      "payload": self.payload,
      "pinnedInputs": self.pinned_inputs,
    }


class GenerationProvider(Protocol):
  """External generation call for one unit of work.

  Implementations return an output reference. They raise
  ``OutputValidationError`` when output was produced but rejected, and any
  other exception for a hard failure. Calls must be idempotent per
  ``request.idempotency_key``.
  """

  async def generate(self, request: GenerationRequest) -> str:
    """Produce output for a unit and return a reference to it."""


class ProviderRegistry:
  """Registry mapping job kinds (and chunk work) to generation providers."""

  def __init__(self, providers: dict[str, GenerationProvider], *, default: GenerationProvider | None = None) -> None:
    self._providers = dict(providers)
    self._default = default

  def resolve(self, kind: str) -> GenerationProvider:
    provider = self._providers.get(kind, self._default)
    if provider is None:
      raise ValueError(f"No generation provider registered for kind: {kind}")
    return provider


class DryRunProvider:
  """Returns a deterministic reference without calling anything; for local runs."""

  async def generate(self, request: GenerationRequest) -> str:
    return f"dryrun://{request.kind}/{request.unit_id}/{request.idempotency_key}"


class _GenerationResponse(msgspec.Struct):
  outputRef: str | None = None  # noqa: N815
  output_ref: str | None = None
  error: str | None = None


class HttpGenerationProvider:
  """POSTs a generation request to an external endpoint.

  The idempotency key travels in the ``Idempotency-Key`` header so a replayed
  call after a lost claim returns the original output.
  """

  def __init__(self, base_url: str, *, secret: str | None = None, timeout_seconds: float = 120.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
    self._url = f"{base_url.rstrip('/')}/generate"
    self._secret = secret
    self._timeout = timeout_seconds
    self._transport = transport

  def _headers(self, request: GenerationRequest) -> dict[str, str]:
    headers = {"idempotency-key": request.idempotency_key}
    if self._secret:
      headers["authorization"] = f"Bearer {self._secret}"
    return headers

  async def generate(self, request: GenerationRequest) -> str:
    async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout, trust_env=False) as client:
      try:
        response = await client.post(self._url, json=request.to_dict(), headers=self._headers(request))
      except httpx.RequestError as exc:
        raise ItemExecutionError(f"Generation request failed: {exc}") from exc

    if response.status_code == 422:
      body = _decode_response(response.content)
      raise OutputValidationError(body.error or "Generated output failed validation.")
    if response.status_code >= 400:
      logger.warning("Generation endpoint returned %s for unit=%s", response.status_code, request.unit_id)
      raise ItemExecutionError(f"Generation endpoint returned {response.status_code}")

    body = _decode_response(response.content)
    output_ref = body.outputRef or body.output_ref
    if not output_ref:
      raise OutputValidationError("Generation response did not include an output reference.")
    return output_ref


def _decode_response(content: bytes) -> _GenerationResponse:
  if not content:
    return _GenerationResponse()
  try:
    return msgspec.json.decode(content, type=_GenerationResponse)
  except msgspec.DecodeError as exc:
    raise OutputValidationError(f"Generation response was not valid JSON: {exc}") from exc


def build_provider_registry(settings: Settings) -> ProviderRegistry:
  """Route every kind to the HTTP provider when configured, else to the dry-run provider."""
  if settings.generation_url:
    provider: GenerationProvider = HttpGenerationProvider(settings.generation_url, secret=settings.generation_secret, timeout_seconds=settings.executor_timeout_seconds)
  else:
    logger.warning("AUTORUN_GENERATION_URL is not set; using the dry-run generation provider.")
    provider = DryRunProvider()
  return ProviderRegistry({}, default=provider)
