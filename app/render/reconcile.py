"""Settle a terminal job's credit reservation exactly once."""

from __future__ import annotations

import logging

from app.render.models import RenderJobRecord, RenderStatus
from app.services.credit_ledger import CreditLedger

logger = logging.getLogger(__name__)


class LedgerReconciler:
  """Commit on success, refund on failure or cancellation; safe to repeat."""

  def __init__(self, ledger: CreditLedger) -> None:
    self._ledger = ledger

  async def reconcile(self, job: RenderJobRecord) -> bool:
    """Return True when this call wrote the settlement entry."""
    if not job.is_terminal:
      raise ValueError(f"Cannot reconcile non-terminal job {job.job_id} (status={job.status.value})")

    if job.status == RenderStatus.COMPLETE:
      written = await self._ledger.commit(job.job_id)
      action = "commit"
    else:
      written = await self._ledger.refund(job.job_id)
      action = "refund"

    if written:
      logger.info("Reconciled credits job=%s owner=%s action=%s cost=%d", job.job_id, job.owner_id, action, job.cost)
    else:
      logger.debug("Reconcile no-op job=%s action=%s", job.job_id, action)
    return written
