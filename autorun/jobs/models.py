"""Domain models for resumable pipeline jobs, their items, approval checkpoints and chunks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

JobStatus = Literal["queued", "running", "paused", "stopped", "completed", "failed"]
ItemStatus = Literal["queued", "running", "done", "failed", "failed_validation", "needs_regen", "skipped"]
JobKind = Literal["document_autorun", "series_scripts", "trailer_clips", "trailer_audio", "trailer_render"]
ApprovalDecision = Literal["approved", "rejected"]
RejectPolicy = Literal["regen", "pause"]

JOB_KINDS: tuple[str, ...] = ("document_autorun", "series_scripts", "trailer_clips", "trailer_audio", "trailer_render")
TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed", "paused", "stopped"})
FINISHED_ITEM_STATUSES: frozenset[str] = frozenset({"done", "skipped"})
ERROR_ITEM_STATUSES: frozenset[str] = frozenset({"failed", "failed_validation"})
REGENERABLE_STATUSES: frozenset[str] = frozenset({"failed", "failed_validation", "needs_regen"})
# Items in these states are picked up by ticks without a human action.
CLAIMABLE_ITEM_STATUSES: frozenset[str] = frozenset({"queued", "needs_regen"})
# Chunks only leave needs_regen through an explicit regen.
CLAIMABLE_CHUNK_STATUSES: frozenset[str] = frozenset({"queued"})

# Status changes are monotone except paused<->running and the explicit failed->running retry.
ALLOWED_JOB_TRANSITIONS: dict[str, frozenset[str]] = {
  "queued": frozenset({"running", "paused", "stopped", "completed", "failed"}),
  "running": frozenset({"paused", "stopped", "completed", "failed"}),
  "paused": frozenset({"running", "stopped"}),
  "stopped": frozenset(),
  "completed": frozenset({"running"}),
  "failed": frozenset({"running", "stopped"}),
}


def can_transition(current: str, target: str) -> bool:
  """Return True when the job may move from current to target status."""
  return target in ALLOWED_JOB_TRANSITIONS.get(current, frozenset())


def allowed_sources(target: str) -> tuple[str, ...]:
  """Return every status that may legally transition to target."""
  return tuple(sorted(source for source, targets in ALLOWED_JOB_TRANSITIONS.items() if target in targets))


@dataclass(frozen=True)
class JobPolicy:
  """Execution policy attached to a job at start time."""

  auto_approve: bool = False
  stop_on_first_fail: bool = False
  max_items_per_tick: int = 1
  require_approval_for: tuple[str, ...] = ()
  on_reject: RejectPolicy = "regen"

  def requires_approval(self, stage_key: str | None) -> bool:
    return stage_key is not None and stage_key in self.require_approval_for

  def to_dict(self) -> dict[str, Any]:
    return {
      "auto_approve": self.auto_approve,
      "stop_on_first_fail": self.stop_on_first_fail,
      "max_items_per_tick": self.max_items_per_tick,
      "require_approval_for": list(self.require_approval_for),
      "on_reject": self.on_reject,
    }

  @classmethod
  def from_dict(cls, raw: dict[str, Any] | None) -> JobPolicy:
    data = dict(raw or {})
    return cls(
      auto_approve=bool(data.get("auto_approve", False)),
      stop_on_first_fail=bool(data.get("stop_on_first_fail", False)),
      max_items_per_tick=max(int(data.get("max_items_per_tick") or 1), 1),
      require_approval_for=tuple(data.get("require_approval_for") or ()),
      on_reject=data.get("on_reject") or "regen",
    )


@dataclass
class JobRecord:
  """A resumable pipeline job; all orchestration state lives here and on its items."""

  job_id: str
  kind: JobKind
  project_ref: str
  status: JobStatus
  total_count: int
  created_at: datetime
  updated_at: datetime
  policy: JobPolicy = field(default_factory=JobPolicy)
  format: str | None = None
  completed_count: int = 0
  error_count: int = 0
  current_stage_index: int = 0
  awaiting_approval: bool = False
  approval_required_for: str | None = None
  pending_artifact_ref: str | None = None
  pinned_inputs: dict[str, str] = field(default_factory=dict)
  tick_count: int = 0
  stop_reason: str | None = None
  last_error: str | None = None
  options: dict[str, Any] = field(default_factory=dict)
  idempotency_key: str | None = None
  started_at: datetime | None = None
  completed_at: datetime | None = None

  @property
  def is_done(self) -> bool:
    return self.status in TERMINAL_JOB_STATUSES


@dataclass
class ItemRecord:
  """One unit of work inside a job; index order is execution order for a single caller."""

  item_id: str
  job_id: str
  index: int
  status: ItemStatus
  created_at: datetime
  updated_at: datetime
  stage_key: str | None = None
  title: str | None = None
  payload: dict[str, Any] = field(default_factory=dict)
  attempts: int = 0
  # Bumped by every requeue; one generation produces at most one output.
  generation: int = 0
  error: str | None = None
  output_ref: str | None = None
  claim_key: str | None = None
  claimed_at: datetime | None = None
  claim_expires_at: datetime | None = None
  started_at: datetime | None = None
  completed_at: datetime | None = None


@dataclass(frozen=True)
class ItemCounters:
  """Job counters derived from item state; never maintained incrementally."""

  completed_count: int
  error_count: int
  current_stage_index: int


def summarize_items(items: list[ItemRecord]) -> ItemCounters:
  ordered = sorted(items, key=lambda item: item.index)
  completed = sum(1 for item in ordered if item.status in FINISHED_ITEM_STATUSES)
  errors = sum(1 for item in ordered if item.status in ERROR_ITEM_STATUSES)
  current = next((item.index for item in ordered if item.status not in FINISHED_ITEM_STATUSES), len(ordered))
  return ItemCounters(completed_count=completed, error_count=errors, current_stage_index=current)


@dataclass(frozen=True)
class ItemSpec:
  """Blueprint for an item materialized at job start."""

  stage_key: str | None
  title: str | None = None
  payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ApprovalCheckpointRecord:
  """A human decision point on one gated item; the latest record per item is authoritative."""

  checkpoint_id: str
  job_id: str
  stage_key: str
  item_id: str
  pending_artifact_ref: str | None
  requested_at: datetime
  decision: ApprovalDecision | None = None
  decided_at: datetime | None = None
  note: str | None = None

  @property
  def state(self) -> str:
    return self.decision or "requested"


@dataclass
class ChunkRecord:
  """One independently retryable slice of an oversized document version."""

  document_id: str
  version_id: str
  index: int
  key: str
  status: ItemStatus
  char_count: int
  created_at: datetime
  updated_at: datetime
  content: str = ""
  attempts: int = 0
  generation: int = 0
  error: str | None = None
  output_ref: str | None = None
  claim_key: str | None = None
  claimed_at: datetime | None = None
  claim_expires_at: datetime | None = None
  completed_at: datetime | None = None


@dataclass(frozen=True)
class ChunkGroup:
  """All chunks for one document version, ordered by index."""

  document_id: str
  version_id: str
  chunks: tuple[ChunkRecord, ...]

  @property
  def complete(self) -> bool:
    return bool(self.chunks) and all(chunk.status == "done" for chunk in self.chunks)
