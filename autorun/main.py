from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from autorun.api.routes import chunks, jobs, ladders
from autorun.config import get_settings
from autorun.core.exceptions import OrchestratorError, global_exception_handler, http_exception_handler, orchestrator_exception_handler, request_validation_exception_handler
from autorun.core.lifespan import lifespan
from autorun.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware

APP_VERSION = "0.1.0"

settings = get_settings()

app = FastAPI(title="autorun", version=APP_VERSION, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url="/openapi.json" if settings.debug else None)

app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.allowed_origins,
  allow_credentials=True,
  allow_methods=["GET", "POST", "OPTIONS"],
  allow_headers=["content-type", "authorization", "x-request-id"],
  expose_headers=["content-length", "x-request-id"],
)


# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(OrchestratorError, orchestrator_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": APP_VERSION}


app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(chunks.router, prefix="/v1/chunks", tags=["chunks"])
app.include_router(ladders.router, prefix="/v1/ladders", tags=["ladders"])
