"""Domain models for render jobs."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.render.errors import InvalidTransitionError, RenderErrorKind


class RenderStatus(str, enum.Enum):
  """Lifecycle states of a render job."""

  QUEUED = "queued"
  DISPATCHED = "dispatched"
  RENDERING = "rendering"
  FINALIZING = "finalizing"
  COMPLETE = "complete"
  FAILED = "failed"
  CANCELLED = "cancelled"

  @property
  def is_terminal(self) -> bool:
    return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RenderStatus.COMPLETE, RenderStatus.FAILED, RenderStatus.CANCELLED})

# Queued may fail directly when dispatch exhausts its retry budget.
ALLOWED_TRANSITIONS: dict[RenderStatus, frozenset[RenderStatus]] = {
  RenderStatus.QUEUED: frozenset({RenderStatus.DISPATCHED, RenderStatus.FAILED, RenderStatus.CANCELLED}),
  RenderStatus.DISPATCHED: frozenset({RenderStatus.RENDERING, RenderStatus.FAILED, RenderStatus.CANCELLED}),
  RenderStatus.RENDERING: frozenset({RenderStatus.FINALIZING, RenderStatus.FAILED, RenderStatus.CANCELLED}),
  RenderStatus.FINALIZING: frozenset({RenderStatus.COMPLETE, RenderStatus.FAILED, RenderStatus.CANCELLED}),
  RenderStatus.COMPLETE: frozenset(),
  RenderStatus.FAILED: frozenset(),
  RenderStatus.CANCELLED: frozenset(),
}


def can_transition(current: RenderStatus, target: RenderStatus) -> bool:
  """Return True when the state machine permits current -> target."""
  return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: RenderStatus, target: RenderStatus) -> None:
  """Raise when current -> target is not a legal transition."""
  if not can_transition(current, target):
    raise InvalidTransitionError(f"Illegal render transition {current.value} -> {target.value}")


def utc_now() -> datetime:
  return datetime.now(UTC)


@dataclass
class RenderJobRecord:
  """Represents one render request and its tracked lifecycle."""

  job_id: str
  owner_id: str
  spec: dict[str, Any]
  status: RenderStatus
  cost: int
  created_at: datetime
  updated_at: datetime
  progress: float = 0.0
  retry_count: int = 0
  total_frames: int = 0
  partition_count: int = 0
  tracking_id: str | None = None
  resource_locator: str | None = None
  output_locator: str | None = None
  output_size_bytes: int | None = None
  output_path: str | None = None
  output_url: str | None = None
  error_kind: RenderErrorKind | None = None
  error_message: str | None = None
  cancel_requested: bool = False
  dispatched_at: datetime | None = None
  completed_at: datetime | None = None
  settled_at: datetime | None = None

  @property
  def is_terminal(self) -> bool:
    return self.status.is_terminal

  @property
  def output_kind(self) -> str:
    return str(self.spec.get("output_kind") or "mp4")


@dataclass(frozen=True)
class PartitionRange:
  """Inclusive frame range rendered by one fleet worker."""

  index: int
  start_frame: int
  end_frame: int

  @property
  def frame_count(self) -> int:
    return self.end_frame - self.start_frame + 1


@dataclass(frozen=True)
class PartitionPlan:
  """Fixed-size chunking of a job's frames."""

  total_frames: int
  frames_per_partition: int
  partitions: list[PartitionRange] = field(default_factory=list)

  @property
  def partition_count(self) -> int:
    return len(self.partitions)
