import logging

from fastapi import APIRouter, Depends, HTTPException, status

from autorun.api.deps import get_job_service
from autorun.api.models import ChunkAssembleResponse, ChunkGroupResponse, ChunkOpenRequest, ChunkOpenResponse, ChunkRegenRequest, ChunkRegenResponse, ChunkTickRequest, ChunkTickResponse
from autorun.services.jobs import JobService

router = APIRouter()
logger = logging.getLogger("autorun.api.routes.chunks")


@router.post("", response_model=ChunkOpenResponse)
async def open_chunks(request: ChunkOpenRequest, service: JobService = Depends(get_job_service)) -> ChunkOpenResponse:  # noqa: B008
  """Split oversized content into a chunk group; content that fits is not chunked."""
  group = await service.open_chunks(request.document_id, request.version_id, request.content)
  if group is None:
    return ChunkOpenResponse(chunked=False)
  return ChunkOpenResponse(chunked=True, group=ChunkGroupResponse.from_group(group))


@router.post("/regen", response_model=ChunkRegenResponse)
async def regen_chunks(request: ChunkRegenRequest, service: JobService = Depends(get_job_service)) -> ChunkRegenResponse:  # noqa: B008
  """Requeue failed chunks only; done chunks are never rerun."""
  group, indexes = await service.regen_chunks(request.document_id, request.version_id)
  processed = 0
  if request.resume_chunks and indexes:
    result = await service.tick_chunks(request.document_id, request.version_id, max_chunks=len(indexes))
    group = result.group
    processed = result.processed_count
  return ChunkRegenResponse(requeued_indexes=indexes, processed_count=processed, group=ChunkGroupResponse.from_group(group))


@router.get("/{document_id}/{version_id}", response_model=ChunkGroupResponse)
async def get_chunk_status(document_id: str, version_id: str, service: JobService = Depends(get_job_service)) -> ChunkGroupResponse:  # noqa: B008
  return ChunkGroupResponse.from_group(await service.chunk_status(document_id, version_id))


@router.post("/{document_id}/{version_id}/tick", response_model=ChunkTickResponse)
async def tick_chunks(document_id: str, version_id: str, request: ChunkTickRequest | None = None, service: JobService = Depends(get_job_service)) -> ChunkTickResponse:  # noqa: B008
  max_chunks = request.max_chunks if request is not None else 1
  return ChunkTickResponse.from_result(await service.tick_chunks(document_id, version_id, max_chunks=max_chunks))


@router.get("/{document_id}/{version_id}/assemble", response_model=ChunkAssembleResponse)
async def assemble_chunks(document_id: str, version_id: str, service: JobService = Depends(get_job_service)) -> ChunkAssembleResponse:  # noqa: B008
  """Return chunk outputs in order once every chunk is done."""
  refs = await service.assemble_chunks(document_id, version_id)
  if refs is None:
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Chunk group is not complete.")
  return ChunkAssembleResponse(document_id=document_id, version_id=version_id, output_refs=refs)
