"""Poll the worker fleet and drive a rendering job's state machine."""

from __future__ import annotations

import asyncio
import datetime
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

from app.config import Settings
from app.render.errors import RenderErrorKind
from app.render.models import RenderJobRecord, RenderStatus, utc_now
from app.services.worker_fleet import FleetProgress, TrackingHandle, WorkerFleet
from app.storage.render_jobs_repo import RenderJobsRepository, finish_job

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollResult:
  """Outcome of one poll cycle.

  ``done`` means the job left the rendering state during this cycle and the
  poll loop should stop; ``status`` is the job's status afterwards.
  """

  done: bool
  progress: float
  status: RenderStatus
  output_locator: str | None = None
  error: RenderErrorKind | None = None
  error_message: str | None = None


def clamp_progress(reported: float, last: float) -> float:
  """Clamp a reported fraction into [0, 1] and never below the last recorded value."""
  if reported is None or math.isnan(reported):
    return last
  bounded = min(max(float(reported), 0.0), 1.0)
  return max(bounded, last)


class ProgressAggregator:
  """Merge fleet progress into one monotonic value per job.

  Consecutive poll failures are counted per job in memory; a successful
  poll resets the counter. After a restart the count starts over.
  """

  def __init__(self, *, jobs_repo: RenderJobsRepository, fleet: WorkerFleet, settings: Settings, clock: Callable[[], datetime.datetime] = utc_now) -> None:
    self._jobs_repo = jobs_repo
    self._fleet = fleet
    self._settings = settings
    self._clock = clock
    self._consecutive_failures: dict[str, int] = {}

  def consecutive_failures(self, job_id: str) -> int:
    return self._consecutive_failures.get(job_id, 0)

  def forget(self, job_id: str) -> None:
    self._consecutive_failures.pop(job_id, None)

  async def poll(self, job: RenderJobRecord) -> PollResult:
    """Run one poll cycle for a rendering job."""
    if job.status != RenderStatus.RENDERING:
      raise ValueError(f"Only rendering jobs can be polled (job={job.job_id} status={job.status.value})")

    if job.cancel_requested:
      return await self._cancel(job)

    if self._timed_out(job):
      message = f"Render did not finish within {self._settings.job_timeout_seconds} seconds."
      return await self._fail(job, RenderErrorKind.JOB_TIMEOUT, message)

    if not job.tracking_id or not job.resource_locator:
      return await self._fail(job, RenderErrorKind.WORKER_FATAL_ERROR, "Render has no fleet tracking handle.")

    handle = TrackingHandle(tracking_id=job.tracking_id, resource_locator=job.resource_locator)
    try:
      report: FleetProgress = await asyncio.wait_for(self._fleet.progress(handle), timeout=self._settings.fleet_timeout_seconds)
    except asyncio.CancelledError:
      raise
    except Exception as exc:  # noqa: BLE001
      return await self._record_poll_failure(job, exc)

    self._consecutive_failures.pop(job.job_id, None)

    if report.fatal_error:
      return await self._fail(job, RenderErrorKind.WORKER_FATAL_ERROR, report.fatal_error)

    progress = clamp_progress(report.progress, job.progress)
    if report.progress is not None and not math.isnan(report.progress) and report.progress < job.progress:
      logger.warning("Progress regression clamped job=%s reported=%.4f recorded=%.4f", job.job_id, report.progress, job.progress)

    if report.done:
      if not report.output_locator:
        return await self._fail(job, RenderErrorKind.WORKER_FATAL_ERROR, "Render finished without an output artifact.")
      moved = await self._jobs_repo.transition(
        job.job_id,
        expected_status=RenderStatus.RENDERING,
        target_status=RenderStatus.FINALIZING,
        progress=progress,
        output_locator=report.output_locator,
        output_size_bytes=report.output_size_bytes,
      )
      self.forget(job.job_id)
      if moved is None:
        return await self._stale(job)
      logger.info("Render finished on fleet job=%s size_bytes=%s", job.job_id, report.output_size_bytes)
      return PollResult(done=True, progress=progress, status=RenderStatus.FINALIZING, output_locator=report.output_locator)

    if progress > job.progress:
      updated = await self._jobs_repo.update_job(job.job_id, expected_status=RenderStatus.RENDERING, progress=progress)
      if updated is None:
        return await self._stale(job)
      logger.debug("Progress job=%s progress=%.4f", job.job_id, progress)

    return PollResult(done=False, progress=progress, status=RenderStatus.RENDERING)

  def _timed_out(self, job: RenderJobRecord) -> bool:
    started = job.dispatched_at or job.created_at
    elapsed = (self._clock() - started).total_seconds()
    return elapsed > self._settings.job_timeout_seconds

  async def _record_poll_failure(self, job: RenderJobRecord, exc: Exception) -> PollResult:
    failures = self._consecutive_failures.get(job.job_id, 0) + 1
    self._consecutive_failures[job.job_id] = failures
    limit = self._settings.max_consecutive_poll_failures
    logger.warning("Poll failed job=%s consecutive=%d/%d error=%s: %s", job.job_id, failures, limit, type(exc).__name__, exc)
    if failures >= limit:
      return await self._fail(job, RenderErrorKind.POLL_TIMEOUT, f"Render progress unavailable after {failures} consecutive attempts.")
    return PollResult(done=False, progress=job.progress, status=RenderStatus.RENDERING)

  async def _fail(self, job: RenderJobRecord, kind: RenderErrorKind, message: str) -> PollResult:
    self.forget(job.job_id)
    moved = await finish_job(self._jobs_repo, job.job_id, expected_status=RenderStatus.RENDERING, target_status=RenderStatus.FAILED, error_kind=kind, error_message=message)
    if moved is None:
      return await self._stale(job)
    if moved.status == RenderStatus.CANCELLED:
      logger.info("Render cancelled while polling job=%s suppressed_kind=%s", job.job_id, kind.value)
      return PollResult(done=True, progress=job.progress, status=RenderStatus.CANCELLED, error=RenderErrorKind.CANCELLED)
    logger.error("Render failed job=%s kind=%s message=%s", job.job_id, kind.value, message)
    return PollResult(done=True, progress=job.progress, status=RenderStatus.FAILED, error=kind, error_message=message)

  async def _cancel(self, job: RenderJobRecord) -> PollResult:
    self.forget(job.job_id)
    moved = await self._jobs_repo.transition(job.job_id, expected_status=RenderStatus.RENDERING, target_status=RenderStatus.CANCELLED)
    if moved is None:
      return await self._stale(job)
    logger.info("Render cancelled job=%s", job.job_id)
    return PollResult(done=True, progress=job.progress, status=RenderStatus.CANCELLED, error=RenderErrorKind.CANCELLED)

  async def _stale(self, job: RenderJobRecord) -> PollResult:
    # Another writer moved the job; report what is stored now.
    current = await self._jobs_repo.get_job(job.job_id)
    status = current.status if current else job.status
    progress = current.progress if current else job.progress
    logger.warning("Job moved during poll job=%s status=%s", job.job_id, status.value)
    return PollResult(done=status != RenderStatus.RENDERING, progress=progress, status=status)
