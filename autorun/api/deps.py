"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends

from autorun.config import Settings, get_settings
from autorun.services.jobs import JobService
from autorun.storage.factory import get_jobs_repo


def get_job_service(settings: Settings = Depends(get_settings)) -> JobService:  # noqa: B008
  """Build the job service over the configured store; tests override this."""
  return JobService(get_jobs_repo(settings), settings)
