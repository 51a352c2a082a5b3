import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class OrchestratorError(Exception):
  """Base class for orchestration errors surfaced to API callers."""

  status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
  code = "orchestrator_error"


class JobNotFoundError(OrchestratorError):
  """Raised when a job id does not resolve to a stored job."""

  status_code = status.HTTP_404_NOT_FOUND
  code = "job_not_found"


class ChunkGroupNotFoundError(OrchestratorError):
  """Raised when no chunk group exists for a document version."""

  status_code = status.HTTP_404_NOT_FOUND
  code = "chunk_group_not_found"


class InvalidTransitionError(OrchestratorError):
  """Raised when a job status change is not allowed from its current status."""

  status_code = status.HTTP_409_CONFLICT
  code = "invalid_transition"


class StaleDecisionError(OrchestratorError):
  """Raised when an approval decision does not match the open checkpoint."""

  status_code = status.HTTP_409_CONFLICT
  code = "stale_decision"


class ApprovalStateError(OrchestratorError):
  """Raised when a gate is requested again without a fresh proposal."""

  status_code = status.HTTP_409_CONFLICT
  code = "approval_state"


class TransientInfraError(OrchestratorError):
  """Network or timeout failure reaching the tick endpoint; never a job failure."""

  status_code = status.HTTP_503_SERVICE_UNAVAILABLE
  code = "transient_infra"


class ItemExecutionError(Exception):
  """Raised by generation providers when a single unit of work fails."""


class OutputValidationError(Exception):
  """Raised when output was produced but failed a correctness check."""


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any, *, request_id: str | None = None, code: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if code:
    payload["code"] = code
  # Attach a request id so support can correlate client reports to server logs.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx

    sanitized.append(_coerce_json_safe(scrubbed))

  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  request_id = getattr(request.state, "request_id", None)
  logger.error("Global exception request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error", request_id=request_id))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  request_id = getattr(request.state, "request_id", None)
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed request_id=%s path=%s method=%s errors=%s", request_id, request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, request_id=request_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle FastAPI HTTPExceptions while avoiding leaking internal diagnostics."""
  from autorun.config import get_settings

  settings = get_settings()
  request_id = getattr(request.state, "request_id", None)
  if exc.status_code >= 500:
    logger = logging.getLogger("uvicorn.error")
    logger.error("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error", request_id=request_id))

  if settings.log_http_4xx:
    logger = logging.getLogger("uvicorn.error")
    logger.warning("HTTPException request_id=%s path=%s status_code=%s detail=%s", request_id, request.url.path, exc.status_code, exc.detail)

  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail, request_id=request_id))


async def orchestrator_exception_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
  """Map orchestration errors to their status codes with a stable error code."""
  request_id = getattr(request.state, "request_id", None)
  logger = logging.getLogger("uvicorn.error")
  if exc.status_code >= 500:
    logger.error("Orchestrator failure request_id=%s path=%s error_type=%s", request_id, request.url.path, type(exc).__name__, exc_info=True)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Service Unavailable", request_id=request_id, code=exc.code))

  logger.info("Orchestrator rejection request_id=%s path=%s code=%s detail=%s", request_id, request.url.path, exc.code, exc)
  return JSONResponse(status_code=exc.status_code, content=_error_payload(str(exc), request_id=request_id, code=exc.code))
