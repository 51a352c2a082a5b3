from fastapi import APIRouter

from autorun.api.models import LadderResponse
from autorun.jobs.ladders import ladder_for, registered_formats, resolve_format_key

router = APIRouter()


@router.get("", response_model=list[str])
async def list_formats() -> list[str]:
  """List every format slug with a registered ladder."""
  return list(registered_formats())


@router.get("/{format_name}", response_model=LadderResponse)
async def get_ladder(format_name: str) -> LadderResponse:
  """Return the ordered stages for a format; unknown formats resolve to the default ladder."""
  resolved = resolve_format_key(format_name)
  return LadderResponse(format=resolved, stages=list(ladder_for(resolved)))
