"""Storage backend selection."""

from __future__ import annotations

import logging

from autorun.config import Settings
from autorun.storage.jobs_repo import JobsRepository
from autorun.storage.memory_jobs_repo import InMemoryJobsRepository

logger = logging.getLogger(__name__)

# The in-memory store only works as a process-wide singleton.
_MEMORY_REPO: InMemoryJobsRepository | None = None


def get_jobs_repo(settings: Settings) -> JobsRepository:
  """Return the jobs repository for the configured storage backend."""
  global _MEMORY_REPO
  if settings.storage_backend == "postgres":
    from autorun.storage.postgres_jobs_repo import PostgresJobsRepository

    return PostgresJobsRepository()

  if _MEMORY_REPO is None:
    logger.info("Using in-memory job store; state is lost on restart.")
    _MEMORY_REPO = InMemoryJobsRepository()
  return _MEMORY_REPO
