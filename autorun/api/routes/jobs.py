import logging

from fastapi import APIRouter, Depends

from autorun.api.deps import get_job_service
from autorun.api.models import (
  ApprovalsResponse,
  CheckpointResponse,
  DecideRequest,
  ItemResponse,
  JobResponse,
  JobStartRequest,
  JobStartResponse,
  JobStatusResponse,
  ProgressResponse,
  RegenItemsRequest,
  RegenItemsResponse,
  TickRequest,
  TickResponse,
)
from autorun.services.jobs import JobService

router = APIRouter()
logger = logging.getLogger("autorun.api.routes.jobs")


@router.post("", response_model=JobStartResponse)
async def start_job(request: JobStartRequest, service: JobService = Depends(get_job_service)) -> JobStartResponse:  # noqa: B008
  """Create a pipeline job and materialize its items; repeated keys return the original job."""
  policy = request.policy.to_policy() if request.policy is not None else None
  result = await service.start(kind=request.kind, project_ref=request.project_ref, policy=policy, options=request.options, idempotency_key=request.idempotency_key)
  return JobStartResponse(
    job_id=result.job.job_id,
    total_count=result.job.total_count,
    created=result.created,
    job=JobResponse.from_record(result.job),
    items=[ItemResponse.from_record(item) for item in result.items],
  )


@router.post("/{job_id}/tick", response_model=TickResponse)
async def tick_job(job_id: str, request: TickRequest | None = None, service: JobService = Depends(get_job_service)) -> TickResponse:  # noqa: B008
  """Claim and execute a bounded batch of pending items."""
  max_items = request.max_items_per_tick if request is not None else None
  result = await service.tick(job_id, max_items_per_tick=max_items)
  return TickResponse.from_result(result)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, service: JobService = Depends(get_job_service)) -> JobStatusResponse:  # noqa: B008
  """Fetch the job, its items and recent timeline events."""
  view = await service.status(job_id)
  return JobStatusResponse.build(view.job, view.items, view.events)


@router.get("/{job_id}/progress", response_model=ProgressResponse)
async def get_job_progress(job_id: str, service: JobService = Depends(get_job_service)) -> ProgressResponse:  # noqa: B008
  estimate = await service.progress(job_id)
  return ProgressResponse.from_estimate(estimate)


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:  # noqa: B008
  return JobResponse.from_record(await service.pause(job_id))


@router.post("/{job_id}/resume", response_model=JobResponse)
async def resume_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:  # noqa: B008
  return JobResponse.from_record(await service.resume(job_id))


@router.post("/{job_id}/stop", response_model=JobResponse)
async def stop_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:  # noqa: B008
  return JobResponse.from_record(await service.stop(job_id))


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:  # noqa: B008
  """Flip a failed job back to running; completed items are kept."""
  return JobResponse.from_record(await service.retry(job_id))


@router.post("/{job_id}/regen-items", response_model=RegenItemsResponse)
async def regen_items(job_id: str, request: RegenItemsRequest, service: JobService = Depends(get_job_service)) -> RegenItemsResponse:  # noqa: B008
  """Requeue failed, failed_validation or needs_regen items for regeneration."""
  job, indexes = await service.regen_items(job_id, statuses=request.statuses, indexes=request.indexes)
  return RegenItemsResponse(job=JobResponse.from_record(job), requeued_indexes=indexes)


@router.post("/{job_id}/decide", response_model=JobResponse)
async def decide_checkpoint(job_id: str, request: DecideRequest, service: JobService = Depends(get_job_service)) -> JobResponse:  # noqa: B008
  """Approve or reject the open checkpoint for a stage."""
  logger.info("Decision received job_id=%s stage=%s approved=%s", job_id, request.stage_key, request.approved)
  job = await service.decide(job_id, request.stage_key, approved=request.approved, note=request.note)
  return JobResponse.from_record(job)


@router.get("/{job_id}/approvals", response_model=ApprovalsResponse)
async def list_approvals(job_id: str, service: JobService = Depends(get_job_service)) -> ApprovalsResponse:  # noqa: B008
  checkpoints = await service.approvals(job_id)
  return ApprovalsResponse(job_id=job_id, checkpoints=[CheckpointResponse.from_record(record) for record in checkpoints])
