"""Chunk sub-jobs: split an oversized document version into independently retryable slices."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from autorun.core.exceptions import ChunkGroupNotFoundError
from autorun.jobs.claims import LeasePolicy, WorkClaimer
from autorun.jobs.executor import StepExecutor
from autorun.jobs.models import REGENERABLE_STATUSES, ChunkGroup, ChunkRecord
from autorun.storage.jobs_repo import JobsRepository
from autorun.utils.clock import Clock, utc_now
from autorun.utils.ids import chunk_key, generation_key

logger = logging.getLogger(__name__)

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_JOINER = "\n\n"


def split_content(content: str, max_chars: int) -> list[str]:
  """Pack paragraphs greedily into slices of at most ``max_chars`` characters.

  A paragraph longer than ``max_chars`` is hard-split on its own.
  """
  if max_chars <= 0:
    raise ValueError("max_chars must be positive.")

  pieces: list[str] = []
  for paragraph in _PARAGRAPH_BREAK.split(content):
    paragraph = paragraph.strip()
    if not paragraph:
      continue
    if len(paragraph) <= max_chars:
      pieces.append(paragraph)
      continue
    pieces.extend(paragraph[start : start + max_chars] for start in range(0, len(paragraph), max_chars))

  chunks: list[str] = []
  current = ""
  for piece in pieces:
    candidate = f"{current}{_JOINER}{piece}" if current else piece
    if len(candidate) <= max_chars:
      current = candidate
      continue
    chunks.append(current)
    current = piece
  if current:
    chunks.append(current)
  return chunks


@dataclass(frozen=True)
class ChunkTickResult:
  group: ChunkGroup
  processed_count: int

  @property
  def done(self) -> bool:
    """True when nothing in the group can make progress without a regen."""
    return all(chunk.status not in {"queued", "running"} for chunk in self.group.chunks)


class ChunkTracker:
  """Creates chunk groups lazily and drives them with the shared lease discipline."""

  def __init__(self, repo: JobsRepository, executor: StepExecutor, *, lease: LeasePolicy, chunk_max_chars: int, clock: Clock = utc_now) -> None:
    self._repo = repo
    self._executor = executor
    self._lease = lease
    self._chunk_max_chars = chunk_max_chars
    self._clock = clock

  def needs_chunking(self, content: str) -> bool:
    return len(content) > self._chunk_max_chars

  async def open(self, document_id: str, version_id: str, content: str) -> ChunkGroup | None:
    """Create the chunk group when content exceeds the single-call limit.

    Returns None for content that fits in one call. Opening an existing group
    returns it unchanged.
    """
    existing = await self._repo.list_chunks(document_id, version_id)
    if existing:
      return ChunkGroup(document_id=document_id, version_id=version_id, chunks=tuple(existing))
    if not self.needs_chunking(content):
      return None

    now = self._clock()
    slices = split_content(content, self._chunk_max_chars)
    records = [
      ChunkRecord(document_id=document_id, version_id=version_id, index=index, key=chunk_key(document_id, version_id, index), status="queued", char_count=len(text), created_at=now, updated_at=now, content=text)
      for index, text in enumerate(slices)
    ]
    if await self._repo.create_chunks(records):
      logger.info("Chunk group opened document=%s version=%s chunks=%d chars=%d", document_id, version_id, len(records), len(content))
    return await self.status(document_id, version_id)

  async def status(self, document_id: str, version_id: str) -> ChunkGroup:
    chunks = await self._repo.list_chunks(document_id, version_id)
    if not chunks:
      raise ChunkGroupNotFoundError(f"No chunks for document {document_id} version {version_id}.")
    return ChunkGroup(document_id=document_id, version_id=version_id, chunks=tuple(chunks))

  async def regenerate_missing(self, document_id: str, version_id: str) -> list[int]:
    """Requeue only failed, failed_validation and needs_regen chunks; done chunks never rerun."""
    await self.status(document_id, version_id)
    reset = await self._repo.reset_chunks(document_id, version_id, from_statuses=REGENERABLE_STATUSES, now=self._clock())
    indexes = sorted(chunk.index for chunk in reset)
    logger.info("Chunk regen document=%s version=%s indexes=%s", document_id, version_id, indexes)
    return indexes

  async def tick(self, document_id: str, version_id: str, *, max_chunks: int = 1) -> ChunkTickResult:
    await self.status(document_id, version_id)
    now = self._clock()
    for chunk in await self._repo.expire_exhausted_chunks(document_id, version_id, now=now, max_attempts=self._lease.max_attempts):
      logger.warning("Chunk lease exhausted chunk=%s attempts=%d", chunk.key, chunk.attempts)

    claimer = WorkClaimer(self._repo, self._lease)
    processed = 0
    limit = max(max_chunks, 1)
    while processed < limit:
      candidates = await self._repo.list_claimable_chunks(document_id, version_id, now=self._clock(), max_attempts=self._lease.max_attempts, limit=(limit - processed) * 3)
      claimed: ChunkRecord | None = None
      for candidate in candidates:
        claimed = await claimer.claim_chunk(candidate, now=self._clock())
        if claimed is not None:
          break
      if claimed is None or claimed.claim_key is None:
        break

      processed += 1
      outcome = await self._executor.execute_chunk(claimed, idempotency_key=generation_key(claimed.key, claimed.generation))
      recorded = await self._repo.complete_chunk(document_id, version_id, claimed.index, claim_key=claimed.claim_key, status=outcome.status, now=self._clock(), output_ref=outcome.output_ref, error=outcome.error)
      if recorded is None:
        logger.warning("Chunk lease lost before completion chunk=%s", claimed.key)
      elif outcome.failed:
        logger.warning("Chunk failed chunk=%s status=%s error=%s", claimed.key, outcome.status, outcome.error)

    return ChunkTickResult(group=await self.status(document_id, version_id), processed_count=processed)

  async def assemble(self, document_id: str, version_id: str) -> list[str] | None:
    """Return output refs in chunk order, or None while any chunk is not done."""
    group = await self.status(document_id, version_id)
    if not group.complete:
      return None
    return [chunk.output_ref or "" for chunk in group.chunks]
