import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from autorun.core.database import create_all_tables, dispose_engine
from autorun.core.logging import initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging and storage when uvicorn starts; release pools on shutdown."""
  from autorun.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("autorun.core.lifespan")

  try:
    initialize_logging(settings)
    logger.info("Startup complete - logging verified. environment=%s storage=%s", settings.environment, settings.storage_backend)
  except RuntimeError:
    # The service can still answer ticks without a log file; stdout keeps working.
    logger.warning("Logging setup failed; continuing with default handlers.", exc_info=True)

  if settings.storage_backend == "postgres":
    logger.info("Postgres store configured; AUTORUN_PG_DSN=%s", _redact_dsn(settings.pg_dsn))
    if settings.auto_create_tables:
      # Local development shortcut; deployed environments run alembic instead.
      await create_all_tables()
      logger.info("Pipeline tables ensured via metadata.create_all")

  yield

  if settings.storage_backend == "postgres":
    await dispose_engine()
  logger.info("Shutdown complete.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
