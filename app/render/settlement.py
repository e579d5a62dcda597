"""Reconcile-then-notify for jobs that reached a terminal state."""

from __future__ import annotations

import logging

from app.render.models import RenderJobRecord
from app.render.notify import NotificationEmitter
from app.render.reconcile import LedgerReconciler
from app.storage.render_jobs_repo import RenderJobsRepository

logger = logging.getLogger(__name__)


class RenderSettlement:
  """Run the ledger and notification side effects of a terminal transition.

  How/Why:
    - Both steps are idempotent, so a crash between them is repaired by
      running settle again during recovery.
    - settled_at is stamped only after both steps succeed; an empty value is
      the recovery marker.
  """

  def __init__(self, *, jobs_repo: RenderJobsRepository, reconciler: LedgerReconciler, emitter: NotificationEmitter) -> None:
    self._jobs_repo = jobs_repo
    self._reconciler = reconciler
    self._emitter = emitter

  async def settle(self, job: RenderJobRecord) -> bool:
    """Return True when the job is settled after this call."""
    if not job.is_terminal:
      raise ValueError(f"Cannot settle non-terminal job {job.job_id} (status={job.status.value})")
    if job.settled_at is not None:
      return True

    try:
      await self._reconciler.reconcile(job)
      await self._emitter.notify(job)
      await self._jobs_repo.mark_settled(job.job_id)
    except Exception:  # noqa: BLE001
      logger.exception("Settlement failed; will retry on recovery job=%s status=%s", job.job_id, job.status.value)
      return False

    logger.info("Settled render job=%s status=%s", job.job_id, job.status.value)
    return True
