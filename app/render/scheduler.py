"""Per-job asyncio tasks that advance render jobs to a settled terminal state."""

from __future__ import annotations

import asyncio
import logging

from app.config import Settings
from app.render.dispatch import Dispatcher
from app.render.errors import RenderErrorKind
from app.render.finalize import Finalizer
from app.render.models import RenderJobRecord, RenderStatus
from app.render.progress import ProgressAggregator
from app.render.settlement import RenderSettlement
from app.storage.render_jobs_repo import RenderJobsRepository, finish_job

logger = logging.getLogger(__name__)


class RenderScheduler:
  """Own job-state mutation after admission.

  One task per active job id runs ``advance`` in a loop. Every step holds the
  job's lock, so two advancers for the same job never interleave. Polling
  sleeps on a per-job event so a cancel request wakes the loop early.
  """

  def __init__(
    self,
    *,
    jobs_repo: RenderJobsRepository,
    dispatcher: Dispatcher,
    aggregator: ProgressAggregator,
    finalizer: Finalizer,
    settlement: RenderSettlement,
    settings: Settings,
  ) -> None:
    self._jobs_repo = jobs_repo
    self._dispatcher = dispatcher
    self._aggregator = aggregator
    self._finalizer = finalizer
    self._settlement = settlement
    self._poll_interval = settings.poll_interval_seconds
    self._tasks: dict[str, asyncio.Task[None]] = {}
    self._locks: dict[str, asyncio.Lock] = {}
    self._wake_events: dict[str, asyncio.Event] = {}
    self._closed = False

  @property
  def active_job_ids(self) -> list[str]:
    return [job_id for job_id, task in self._tasks.items() if not task.done()]

  def submit(self, job_id: str) -> None:
    """Start tracking a job; a no-op when it is already tracked."""
    if self._closed:
      logger.warning("Scheduler closed; not tracking job=%s", job_id)
      return
    existing = self._tasks.get(job_id)
    if existing is not None and not existing.done():
      return
    self._wake_events.setdefault(job_id, asyncio.Event())
    task = asyncio.create_task(self._run(job_id), name=f"render-job-{job_id}")
    self._tasks[job_id] = task
    task.add_done_callback(lambda _task, tracked=job_id: self._forget(tracked, _task))

  def cancel(self, job_id: str) -> None:
    """Wake the job's loop so it observes a cancel request promptly."""
    event = self._wake_events.get(job_id)
    if event is not None:
      event.set()

  async def wait_for(self, job_id: str) -> None:
    """Wait until the job's task finishes (used by tests and shutdown paths)."""
    task = self._tasks.get(job_id)
    if task is not None:
      await asyncio.shield(task)

  async def advance(self, job_id: str) -> RenderJobRecord | None:
    """Run exactly one orchestration step for a job under its lock."""
    lock = self._locks.setdefault(job_id, asyncio.Lock())
    async with lock:
      job = await self._jobs_repo.get_job(job_id)
      if job is None:
        logger.warning("Tracked job disappeared job=%s", job_id)
        return None

      if not job.is_terminal:
        await self._step(job)
        job = await self._jobs_repo.get_job(job_id)
        if job is None:
          return None

      if job.is_terminal and job.settled_at is None:
        await self._settlement.settle(job)
        job = await self._jobs_repo.get_job(job_id) or job
      return job

  async def _step(self, job: RenderJobRecord) -> None:
    if job.status == RenderStatus.QUEUED:
      await self._dispatcher.dispatch(job)
    elif job.status == RenderStatus.DISPATCHED:
      # Resumed between dispatch and start acknowledgement.
      target = RenderStatus.CANCELLED if job.cancel_requested else RenderStatus.RENDERING
      await self._jobs_repo.transition(job.job_id, expected_status=RenderStatus.DISPATCHED, target_status=target)
    elif job.status == RenderStatus.RENDERING:
      await self._aggregator.poll(job)
    elif job.status == RenderStatus.FINALIZING:
      await self._finalizer.finalize(job)

  async def _run(self, job_id: str) -> None:
    previous: RenderStatus | None = None
    try:
      while True:
        job = await self.advance(job_id)
        if job is None or job.is_terminal:
          return
        # Keep moving through state changes; wait only when nothing changed or while rendering.
        if job.status == RenderStatus.RENDERING or job.status == previous:
          await self._wait(job_id, self._poll_interval)
        previous = job.status
    except asyncio.CancelledError:
      raise
    except Exception:  # noqa: BLE001
      logger.exception("Render job loop crashed job=%s", job_id)
      await self._fail_stuck(job_id)

  async def _wait(self, job_id: str, seconds: float) -> None:
    event = self._wake_events.setdefault(job_id, asyncio.Event())
    try:
      await asyncio.wait_for(event.wait(), timeout=seconds)
    except TimeoutError:
      pass
    event.clear()

  async def _fail_stuck(self, job_id: str) -> None:
    """Fail a job whose loop crashed so it never stays non-terminal untracked."""
    try:
      lock = self._locks.setdefault(job_id, asyncio.Lock())
      async with lock:
        job = await self._jobs_repo.get_job(job_id)
        if job is None:
          return
        if not job.is_terminal:
          await finish_job(
            self._jobs_repo,
            job_id,
            expected_status=job.status,
            target_status=RenderStatus.FAILED,
            error_kind=RenderErrorKind.POLL_TIMEOUT,
            error_message="Render tracking stopped unexpectedly.",
          )
          job = await self._jobs_repo.get_job(job_id)
        if job is not None and job.is_terminal:
          await self._settlement.settle(job)
    except Exception:  # noqa: BLE001
      logger.exception("Could not fail crashed job=%s; recovery will retry", job_id)

  def _forget(self, job_id: str, task: asyncio.Task[None]) -> None:
    if self._tasks.get(job_id) is task:
      self._tasks.pop(job_id, None)
      self._wake_events.pop(job_id, None)
      self._locks.pop(job_id, None)

  async def recover(self) -> int:
    """Settle unsettled terminal jobs and resume every non-terminal job; return jobs resumed."""
    for job in await self._jobs_repo.list_unsettled():
      await self._settlement.settle(job)
    active = await self._jobs_repo.list_active()
    for job in active:
      self.submit(job.job_id)
    if active:
      logger.info("Resumed %d render job(s) after startup", len(active))
    return len(active)

  async def shutdown(self) -> None:
    """Stop tracking without touching job state; recovery resumes the jobs later."""
    self._closed = True
    tasks = list(self._tasks.values())
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)
    self._tasks.clear()
    self._wake_events.clear()
    self._locks.clear()
