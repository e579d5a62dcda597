"""Facade used by the HTTP layer to submit, inspect and cancel renders."""

from __future__ import annotations

import logging
from typing import Any

from app.render.admission import RequestAdmitter
from app.render.errors import RenderJobNotFoundError
from app.render.models import RenderJobRecord
from app.render.scheduler import RenderScheduler
from app.render.spec import RenderSubmission
from app.services.credit_ledger import CreditLedger, LedgerEntryRecord
from app.storage.render_jobs_repo import RenderJobsRepository

logger = logging.getLogger(__name__)


class RenderService:
  """Owner-scoped operations over render jobs."""

  def __init__(self, *, jobs_repo: RenderJobsRepository, ledger: CreditLedger, admitter: RequestAdmitter, scheduler: RenderScheduler | None) -> None:
    self._jobs_repo = jobs_repo
    self._ledger = ledger
    self._admitter = admitter
    self._scheduler = scheduler

  @property
  def scheduler(self) -> RenderScheduler | None:
    return self._scheduler

  async def submit(self, payload: dict[str, Any] | RenderSubmission, owner_id: str) -> RenderJobRecord:
    """Admit a render and return the freshly queued job."""
    job_id = await self._admitter.admit(payload, owner_id)
    job = await self._jobs_repo.get_job(job_id)
    if job is None:
      raise RenderJobNotFoundError(job_id)
    return job

  def quote(self, payload: dict[str, Any] | RenderSubmission) -> int:
    return self._admitter.quote(payload)

  async def get_job(self, job_id: str, owner_id: str) -> RenderJobRecord:
    job = await self._jobs_repo.get_job(job_id)
    # Other owners' jobs are indistinguishable from missing ones.
    if job is None or job.owner_id != owner_id:
      raise RenderJobNotFoundError(job_id)
    return job

  async def list_jobs(self, owner_id: str, *, limit: int = 20, offset: int = 0) -> list[RenderJobRecord]:
    return await self._jobs_repo.list_jobs(owner_id, limit=limit, offset=offset)

  async def cancel(self, job_id: str, owner_id: str) -> RenderJobRecord:
    """Request cooperative cancellation; terminal jobs are returned unchanged."""
    job = await self.get_job(job_id, owner_id)
    if job.is_terminal:
      return job

    updated = await self._jobs_repo.request_cancel(job_id) or job
    logger.info("Cancel requested job=%s owner=%s status=%s", job_id, owner_id, updated.status.value)
    if self._scheduler is not None:
      self._scheduler.cancel(job_id)
    return updated

  async def balance(self, owner_id: str) -> int:
    return await self._ledger.balance(owner_id)

  async def ledger_entries(self, owner_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    return await self._ledger.list_entries(owner_id, limit=limit)
