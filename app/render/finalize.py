"""Commit a finished render into durable storage and complete the job."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from app.config import Settings
from app.render.errors import RenderErrorKind
from app.render.models import RenderJobRecord, RenderStatus
from app.render.spec import output_format
from app.services.storage_client import ObjectStore
from app.services.worker_fleet import WorkerFleet
from app.storage.render_jobs_repo import RenderJobsRepository, finish_job
from app.utils.retry import RetryExhaustedError, execute_with_retry

logger = logging.getLogger(__name__)


def output_path_for(job_id: str, extension: str) -> str:
  """Object path for a job's artifact; stable so re-finalizing overwrites."""
  return f"renders/{job_id}/output.{extension}"


def artifact_problem(data: bytes, expected_size: int | None) -> str | None:
  """Return why an artifact is unusable, or None when it looks fine."""
  if not data:
    return "Rendered artifact is empty."
  if expected_size is not None and expected_size > 0 and len(data) != expected_size:
    return f"Rendered artifact size mismatch: expected {expected_size} bytes, got {len(data)}."
  return None


class Finalizer:
  """Fetch, validate and store a job's artifact, then mark the job complete."""

  def __init__(self, *, jobs_repo: RenderJobsRepository, fleet: WorkerFleet, store: ObjectStore, settings: Settings, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
    self._jobs_repo = jobs_repo
    self._fleet = fleet
    self._store = store
    self._settings = settings
    self._sleep = sleep

  async def finalize(self, job: RenderJobRecord, output_locator: str | None = None) -> str | None:
    """Return the public output URL, or None when the job failed or was cancelled instead."""
    if job.status != RenderStatus.FINALIZING:
      raise ValueError(f"Only finalizing jobs can be finalized (job={job.job_id} status={job.status.value})")

    if job.cancel_requested:
      await self._cancel(job)
      return None

    locator = output_locator or job.output_locator
    if not locator:
      await self._fail(job, RenderErrorKind.WORKER_FATAL_ERROR, "Render finished without an output artifact.")
      return None

    _codec, content_type, extension = output_format(job.output_kind)
    path = output_path_for(job.job_id, extension)

    try:
      fetched = await execute_with_retry(
        operation_name=f"artifact_fetch job={job.job_id}",
        func=lambda: self._fleet.fetch_artifact(locator),
        max_attempts=self._settings.storage_retry_attempts,
        timeout_seconds=self._settings.fleet_timeout_seconds,
        sleep=self._sleep,
      )
    except RetryExhaustedError as exc:
      await self._fail(job, RenderErrorKind.STORAGE_ERROR, f"Rendered artifact could not be retrieved: {exc.last_error}")
      return None

    data: bytes = fetched.result
    problem = artifact_problem(data, job.output_size_bytes)
    if problem:
      await self._fail(job, RenderErrorKind.WORKER_FATAL_ERROR, problem)
      return None

    try:
      stored = await execute_with_retry(
        operation_name=f"artifact_store job={job.job_id} path={path}",
        func=lambda: self._store.put(path, data, content_type),
        max_attempts=self._settings.storage_retry_attempts,
        timeout_seconds=self._settings.fleet_timeout_seconds,
        sleep=self._sleep,
      )
    except RetryExhaustedError as exc:
      await self._fail(job, RenderErrorKind.STORAGE_ERROR, f"Rendered artifact could not be stored: {exc.last_error}")
      return None

    output_url = self._store.public_url(path)

    # A cancel that arrived while storing still wins over completion.
    completed = await finish_job(
      self._jobs_repo,
      job.job_id,
      expected_status=RenderStatus.FINALIZING,
      target_status=RenderStatus.COMPLETE,
      progress=1.0,
      output_path=path,
      output_url=output_url,
    )
    if completed is None:
      logger.warning("Job left finalizing before completion job=%s", job.job_id)
      return None
    if completed.status == RenderStatus.CANCELLED:
      logger.info("Render cancelled during finalize job=%s", job.job_id)
      return None

    logger.info("Render complete job=%s path=%s bytes=%d store_attempts=%d", job.job_id, path, len(data), stored.attempts)
    return output_url

  async def _fail(self, job: RenderJobRecord, kind: RenderErrorKind, message: str) -> None:
    moved = await finish_job(self._jobs_repo, job.job_id, expected_status=RenderStatus.FINALIZING, target_status=RenderStatus.FAILED, error_kind=kind, error_message=message)
    if moved is None:
      return
    if moved.status == RenderStatus.CANCELLED:
      logger.info("Render cancelled during finalize job=%s suppressed_kind=%s", job.job_id, kind.value)
      return
    logger.error("Finalize failed job=%s kind=%s message=%s", job.job_id, kind.value, message)

  async def _cancel(self, job: RenderJobRecord) -> None:
    moved = await self._jobs_repo.transition(job.job_id, expected_status=RenderStatus.FINALIZING, target_status=RenderStatus.CANCELLED)
    if moved is not None:
      logger.info("Render cancelled during finalize job=%s", job.job_id)
