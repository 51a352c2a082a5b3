from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, field_validator
from pydantic.alias_generators import to_camel

from autorun.jobs.chunks import ChunkTickResult
from autorun.jobs.models import REGENERABLE_STATUSES, ApprovalCheckpointRecord, ChunkGroup, ChunkRecord, ItemRecord, ItemStatus, JobKind, JobPolicy, JobRecord, JobStatus
from autorun.jobs.progress import ProgressEstimate
from autorun.jobs.tick import TickResult

MAX_CHUNK_CONTENT_CHARS = 2_000_000


class ApiModel(BaseModel):
  """Base model: camelCase on the wire, snake_case accepted on input."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class PolicyModel(ApiModel):
  """Execution policy supplied when a job starts."""

  auto_approve: StrictBool = False
  stop_on_first_fail: StrictBool = False
  max_items_per_tick: StrictInt = Field(default=1, ge=1, description="Items claimed per tick; clamped by the server limit.")
  require_approval_for: list[StrictStr] = Field(default_factory=list, description="Stage keys that need a human decision once produced.")
  on_reject: Literal["regen", "pause"] = "regen"

  def to_policy(self) -> JobPolicy:
    return JobPolicy(
      auto_approve=self.auto_approve,
      stop_on_first_fail=self.stop_on_first_fail,
      max_items_per_tick=self.max_items_per_tick,
      require_approval_for=tuple(self.require_approval_for),
      on_reject=self.on_reject,
    )

  @classmethod
  def from_policy(cls, policy: JobPolicy) -> PolicyModel:
    return cls(
      auto_approve=policy.auto_approve,
      stop_on_first_fail=policy.stop_on_first_fail,
      max_items_per_tick=policy.max_items_per_tick,
      require_approval_for=list(policy.require_approval_for),
      on_reject=policy.on_reject,
    )


class JobStartRequest(ApiModel):
  """Request payload for starting a pipeline job."""

  kind: JobKind
  project_ref: StrictStr = Field(min_length=1)
  policy: PolicyModel | None = None
  options: dict[str, Any] = Field(default_factory=dict, description="Kind-specific materialization options (format, stages, episodes, units).")
  idempotency_key: StrictStr | None = Field(default=None, min_length=1, description="Client key that deduplicates repeated starts.")


class TickRequest(ApiModel):
  max_items_per_tick: StrictInt | None = Field(default=None, ge=1)


class DecideRequest(ApiModel):
  """Human decision on the open checkpoint for a stage."""

  stage_key: StrictStr = Field(min_length=1)
  approved: StrictBool
  note: StrictStr | None = Field(default=None, max_length=2000)


class RegenItemsRequest(ApiModel):
  """Targeted regeneration of items; defaults to every regenerable status."""

  statuses: list[ItemStatus] | None = None
  indexes: list[StrictInt] | None = None

  @field_validator("statuses")
  @classmethod
  def validate_statuses(cls, value: list[str] | None) -> list[str] | None:
    if value is None:
      return value
    invalid = sorted(set(value) - REGENERABLE_STATUSES)
    if invalid:
      raise ValueError(f"Statuses not regenerable: {', '.join(invalid)}")
    return value

  @field_validator("indexes")
  @classmethod
  def validate_indexes(cls, value: list[int] | None) -> list[int] | None:
    if value is not None and any(index < 0 for index in value):
      raise ValueError("Item indexes must be 0 or greater.")
    return value


class ChunkOpenRequest(ApiModel):
  document_id: StrictStr = Field(min_length=1)
  version_id: StrictStr = Field(min_length=1)
  content: StrictStr = Field(max_length=MAX_CHUNK_CONTENT_CHARS)


class ChunkRegenRequest(ApiModel):
  """Requeue failed chunks; ``resume_chunks`` also ticks the group once."""

  document_id: StrictStr = Field(min_length=1)
  version_id: StrictStr = Field(min_length=1)
  resume_chunks: StrictBool = True


class ChunkTickRequest(ApiModel):
  max_chunks: StrictInt = Field(default=1, ge=1)


class JobResponse(ApiModel):
  job_id: str
  kind: JobKind
  project_ref: str
  status: JobStatus
  format: str | None = None
  total_count: int
  completed_count: int
  error_count: int
  current_stage_index: int
  tick_count: int
  awaiting_approval: bool
  approval_required_for: str | None = None
  pending_artifact_ref: str | None = None
  pinned_inputs: dict[str, str] = Field(default_factory=dict)
  stop_reason: str | None = None
  last_error: str | None = None
  policy: PolicyModel
  idempotency_key: str | None = None
  created_at: datetime
  updated_at: datetime
  started_at: datetime | None = None
  completed_at: datetime | None = None

  @classmethod
  def from_record(cls, record: JobRecord) -> JobResponse:
    return cls(
      job_id=record.job_id,
      kind=record.kind,
      project_ref=record.project_ref,
      status=record.status,
      format=record.format,
      total_count=record.total_count,
      completed_count=record.completed_count,
      error_count=record.error_count,
      current_stage_index=record.current_stage_index,
      tick_count=record.tick_count,
      awaiting_approval=record.awaiting_approval,
      approval_required_for=record.approval_required_for,
      pending_artifact_ref=record.pending_artifact_ref,
      pinned_inputs=dict(record.pinned_inputs),
      stop_reason=record.stop_reason,
      last_error=record.last_error,
      policy=PolicyModel.from_policy(record.policy),
      idempotency_key=record.idempotency_key,
      created_at=record.created_at,
      updated_at=record.updated_at,
      started_at=record.started_at,
      completed_at=record.completed_at,
    )


class ItemResponse(ApiModel):
  item_id: str
  index: int
  status: ItemStatus
  stage_key: str | None = None
  title: str | None = None
  attempts: int
  error: str | None = None
  output_ref: str | None = None
  started_at: datetime | None = None
  completed_at: datetime | None = None

  @classmethod
  def from_record(cls, record: ItemRecord) -> ItemResponse:
    return cls(
      item_id=record.item_id,
      index=record.index,
      status=record.status,
      stage_key=record.stage_key,
      title=record.title,
      attempts=record.attempts,
      error=record.error,
      output_ref=record.output_ref,
      started_at=record.started_at,
      completed_at=record.completed_at,
    )


class JobStartResponse(ApiModel):
  job_id: str
  total_count: int
  created: bool
  job: JobResponse
  items: list[ItemResponse]


class StageHistoryEntry(ApiModel):
  """Where each stage of the job stands, derived from its items."""

  stage_key: str
  status: ItemStatus
  completed_at: datetime | None = None


class JobStatusResponse(ApiModel):
  job: JobResponse
  items: list[ItemResponse]
  stage_history: list[StageHistoryEntry]
  events: list[str]

  @classmethod
  def build(cls, job: JobRecord, items: list[ItemRecord], events: list[str]) -> JobStatusResponse:
    history = [StageHistoryEntry(stage_key=item.stage_key, status=item.status, completed_at=item.completed_at) for item in items if item.stage_key]
    return cls(job=JobResponse.from_record(job), items=[ItemResponse.from_record(item) for item in items], stage_history=history, events=events)


class TickResponse(ApiModel):
  done: bool
  blocked: bool
  processed_count: int
  job: JobResponse

  @classmethod
  def from_result(cls, result: TickResult) -> TickResponse:
    return cls(done=result.done, blocked=result.blocked, processed_count=result.processed_count, job=JobResponse.from_record(result.job))


class ProgressResponse(ApiModel):
  total: int
  completed: int
  failed: int
  remaining: int
  percent: float
  elapsed_seconds: float
  average_step_seconds: float | None = None
  eta_seconds: float | None = None

  @classmethod
  def from_estimate(cls, estimate: ProgressEstimate) -> ProgressResponse:
    return cls(
      total=estimate.total,
      completed=estimate.completed,
      failed=estimate.failed,
      remaining=estimate.remaining,
      percent=estimate.percent,
      elapsed_seconds=estimate.elapsed_seconds,
      average_step_seconds=estimate.average_step_seconds,
      eta_seconds=estimate.eta_seconds,
    )


class CheckpointResponse(ApiModel):
  checkpoint_id: str
  stage_key: str
  item_id: str
  state: Literal["requested", "approved", "rejected"]
  pending_artifact_ref: str | None = None
  requested_at: datetime
  decided_at: datetime | None = None
  note: str | None = None

  @classmethod
  def from_record(cls, record: ApprovalCheckpointRecord) -> CheckpointResponse:
    return cls(
      checkpoint_id=record.checkpoint_id,
      stage_key=record.stage_key,
      item_id=record.item_id,
      state=record.state,  # type: ignore[arg-type]
      pending_artifact_ref=record.pending_artifact_ref,
      requested_at=record.requested_at,
      decided_at=record.decided_at,
      note=record.note,
    )


class ApprovalsResponse(ApiModel):
  job_id: str
  checkpoints: list[CheckpointResponse]


class RegenItemsResponse(ApiModel):
  job: JobResponse
  requeued_indexes: list[int]


class ChunkResponse(ApiModel):
  index: int
  key: str
  status: ItemStatus
  attempts: int
  char_count: int
  error: str | None = None
  output_ref: str | None = None

  @classmethod
  def from_record(cls, record: ChunkRecord) -> ChunkResponse:
    return cls(index=record.index, key=record.key, status=record.status, attempts=record.attempts, char_count=record.char_count, error=record.error, output_ref=record.output_ref)


class ChunkGroupResponse(ApiModel):
  document_id: str
  version_id: str
  complete: bool
  chunks: list[ChunkResponse]

  @classmethod
  def from_group(cls, group: ChunkGroup) -> ChunkGroupResponse:
    return cls(document_id=group.document_id, version_id=group.version_id, complete=group.complete, chunks=[ChunkResponse.from_record(chunk) for chunk in group.chunks])


class ChunkOpenResponse(ApiModel):
  """``chunked`` is false when the content fits in a single call."""

  chunked: bool
  group: ChunkGroupResponse | None = None


class ChunkRegenResponse(ApiModel):
  requeued_indexes: list[int]
  processed_count: int = 0
  group: ChunkGroupResponse


class ChunkTickResponse(ApiModel):
  done: bool
  processed_count: int
  group: ChunkGroupResponse

  @classmethod
  def from_result(cls, result: ChunkTickResult) -> ChunkTickResponse:
    return cls(done=result.done, processed_count=result.processed_count, group=ChunkGroupResponse.from_group(result.group))


class ChunkAssembleResponse(ApiModel):
  document_id: str
  version_id: str
  output_refs: list[str]


class LadderResponse(ApiModel):
  format: str
  stages: list[str]
