"""Hand a queued job to the worker fleet."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from app.config import Settings
from app.render.errors import RenderErrorKind
from app.render.models import RenderJobRecord, RenderStatus, utc_now
from app.render.spec import output_format, plan_partitions
from app.services.worker_fleet import FleetPartition, FleetSubmission, TrackingHandle, WorkerFleet
from app.storage.render_jobs_repo import RenderJobsRepository, finish_job
from app.utils.retry import FailureClassification, RetryExhaustedError, classify_failure, execute_with_retry

logger = logging.getLogger(__name__)


def build_fleet_submission(job: RenderJobRecord, *, frames_per_partition: int) -> FleetSubmission:
  """Build the fleet payload for a job; identical across retries."""
  plan = plan_partitions(job.total_frames, frames_per_partition)
  codec, _content_type, _extension = output_format(job.output_kind)
  partitions = [FleetPartition(index=part.index, start_frame=part.start_frame, end_frame=part.end_frame) for part in plan.partitions]
  return FleetSubmission(
    job_id=job.job_id,
    spec=dict(job.spec.get("spec") or {}),
    source_asset_url=str(job.spec.get("source_asset_url") or ""),
    codec=codec,
    frames_per_partition=frames_per_partition,
    partitions=partitions,
    images=job.spec.get("images") or None,
    audio_url=job.spec.get("audio_url") or None,
  )


def classify_submit_failure(exc: BaseException) -> FailureClassification:
  """Every failed submit is worth another attempt while the retry budget lasts."""
  classification = classify_failure(exc)
  if classification.retryable:
    return classification
  return dataclasses.replace(classification, retryable=True)


class Dispatcher:
  """Submit a job's partition plan once, retrying any rejection within budget."""

  def __init__(self, *, jobs_repo: RenderJobsRepository, fleet: WorkerFleet, settings: Settings, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
    self._jobs_repo = jobs_repo
    self._fleet = fleet
    self._settings = settings
    self._sleep = sleep

  async def dispatch(self, job: RenderJobRecord) -> TrackingHandle | None:
    """
    Dispatch a queued job and move it to rendering.

    Returns the tracking handle, or None when the job ended instead
    (cancelled before dispatch, or dispatch failed and the job is now failed).
    """
    if job.status != RenderStatus.QUEUED:
      raise ValueError(f"Only queued jobs can be dispatched (job={job.job_id} status={job.status.value})")

    if job.cancel_requested:
      logger.info("Cancel observed before dispatch job=%s", job.job_id)
      await self._jobs_repo.transition(job.job_id, expected_status=RenderStatus.QUEUED, target_status=RenderStatus.CANCELLED)
      return None

    submission = build_fleet_submission(job, frames_per_partition=self._settings.frames_per_partition)

    try:
      outcome = await execute_with_retry(
        operation_name=f"fleet_dispatch job={job.job_id}",
        func=lambda: self._fleet.submit(submission),
        max_attempts=self._settings.dispatch_retry_budget + 1,
        timeout_seconds=self._settings.fleet_timeout_seconds,
        classify=classify_submit_failure,
        sleep=self._sleep,
      )
    except RetryExhaustedError as exc:
      retries = max(exc.attempts - 1, 0)
      logger.error("Dispatch failed job=%s attempts=%d category=%s", job.job_id, exc.attempts, exc.classification.category)
      moved = await finish_job(
        self._jobs_repo,
        job.job_id,
        expected_status=RenderStatus.QUEUED,
        target_status=RenderStatus.FAILED,
        retry_count=retries,
        error_kind=RenderErrorKind.DISPATCH_FAILURE,
        error_message=f"Render could not be started: {exc.last_error}",
      )
      if moved is not None and moved.status == RenderStatus.CANCELLED:
        logger.info("Cancel observed during dispatch job=%s", job.job_id)
      return None

    handle: TrackingHandle = outcome.result
    dispatched = await self._jobs_repo.transition(
      job.job_id,
      expected_status=RenderStatus.QUEUED,
      target_status=RenderStatus.DISPATCHED,
      tracking_id=handle.tracking_id,
      resource_locator=handle.resource_locator,
      retry_count=outcome.attempts - 1,
      partition_count=len(submission.partitions),
      dispatched_at=utc_now(),
    )
    if dispatched is None:
      logger.warning("Job left queued during dispatch job=%s tracking_id=%s", job.job_id, handle.tracking_id)
      return None

    # The submit response doubles as the fleet's start acknowledgement.
    await self._jobs_repo.transition(job.job_id, expected_status=RenderStatus.DISPATCHED, target_status=RenderStatus.RENDERING)
    logger.info("Dispatched render job=%s tracking_id=%s attempts=%d partitions=%d", job.job_id, handle.tracking_id, outcome.attempts, len(submission.partitions))
    return handle
