"""Storage interfaces for render jobs."""

from __future__ import annotations

from typing import Any, Protocol

from app.render.models import RenderJobRecord, RenderStatus

# Fields that may change after creation; owner, spec and cost are immutable.
MUTABLE_FIELDS = frozenset(
  {
    "progress",
    "retry_count",
    "total_frames",
    "partition_count",
    "tracking_id",
    "resource_locator",
    "output_locator",
    "output_size_bytes",
    "output_path",
    "output_url",
    "error_kind",
    "error_message",
    "dispatched_at",
  }
)


# Outcomes a pending cancel overrides; repositories refuse them while cancel_requested is set.
CANCEL_PREEMPTED_STATUSES = frozenset({RenderStatus.COMPLETE, RenderStatus.FAILED})


def check_mutable_fields(changes: dict[str, Any]) -> None:
  """Reject updates to immutable or unknown job fields."""
  unknown = sorted(set(changes) - MUTABLE_FIELDS)
  if unknown:
    raise ValueError(f"Render job fields are not mutable: {', '.join(unknown)}")


class RenderJobsRepository(Protocol):
  """Repository contract for render job persistence.

  Every write is guarded by the status the caller expects, so concurrent
  writers cannot both move a job into a terminal state.
  """

  async def create_job(self, record: RenderJobRecord) -> None:
    """Persist a newly admitted job."""

  async def get_job(self, job_id: str) -> RenderJobRecord | None:
    """Fetch a job by identifier."""

  async def list_jobs(self, owner_id: str, *, limit: int = 20, offset: int = 0) -> list[RenderJobRecord]:
    """Return an owner's jobs, newest first."""

  async def update_job(self, job_id: str, *, expected_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    """Apply field changes when the job is still in expected_status; None otherwise."""

  async def transition(self, job_id: str, *, expected_status: RenderStatus, target_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    """Compare-and-set the status (plus optional field changes); None when the job moved on.

    Transitions into CANCEL_PREEMPTED_STATUSES also return None once a cancel was requested.
    """

  async def request_cancel(self, job_id: str) -> RenderJobRecord | None:
    """Flag a non-terminal job for cancellation and return the current record."""

  async def mark_settled(self, job_id: str) -> None:
    """Stamp settled_at on a terminal job once ledger and notification work is done."""

  async def list_active(self) -> list[RenderJobRecord]:
    """Return every non-terminal job."""

  async def list_unsettled(self) -> list[RenderJobRecord]:
    """Return terminal jobs that still need settlement."""


async def finish_job(jobs_repo: RenderJobsRepository, job_id: str, *, expected_status: RenderStatus, target_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
  """
  Move a job to COMPLETE or FAILED, or to CANCELLED when a cancel landed first.

  Returns the stored record in its new status, or None when another writer
  already moved the job out of expected_status.
  """
  moved = await jobs_repo.transition(job_id, expected_status=expected_status, target_status=target_status, **changes)
  if moved is not None:
    return moved
  current = await jobs_repo.get_job(job_id)
  if current is None or current.status != expected_status or not current.cancel_requested:
    return None
  return await jobs_repo.transition(job_id, expected_status=expected_status, target_status=RenderStatus.CANCELLED)
