"""Admission of render submissions: validate, price, reserve, create."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from app.config import Settings
from app.render.models import RenderJobRecord, RenderStatus, utc_now
from app.render.spec import RenderSubmission, compute_credit_cost, parse_submission, plan_partitions
from app.services.credit_ledger import CreditLedger
from app.storage.render_jobs_repo import RenderJobsRepository
from app.utils.ids import generate_job_id

logger = logging.getLogger(__name__)


class RequestAdmitter:
  """Turn a submission into a queued job with exactly one credit reservation."""

  def __init__(self, *, jobs_repo: RenderJobsRepository, ledger: CreditLedger, settings: Settings, on_admitted: Callable[[str], None] | None = None) -> None:
    self._jobs_repo = jobs_repo
    self._ledger = ledger
    self._settings = settings
    self._on_admitted = on_admitted

  def quote(self, payload: dict[str, Any] | RenderSubmission) -> int:
    """Validate a submission and return its credit cost without side effects."""
    submission = parse_submission(payload, max_duration_seconds=self._settings.max_duration_seconds)
    return compute_credit_cost(submission, credits_per_block=self._settings.credits_per_block, block_seconds=self._settings.credit_block_seconds)

  async def admit(self, payload: dict[str, Any] | RenderSubmission, owner_id: str) -> str:
    """
    Admit a submission for rendering and return the new job id.

    Raises:
      InvalidSpecError: the submission is malformed; nothing was written.
      InsufficientCreditsError: the balance cannot cover the cost; nothing was written.
    """
    if not owner_id:
      raise ValueError("owner_id is required for admission.")

    # Validation and pricing run before any write.
    submission = parse_submission(payload, max_duration_seconds=self._settings.max_duration_seconds)
    cost = compute_credit_cost(submission, credits_per_block=self._settings.credits_per_block, block_seconds=self._settings.credit_block_seconds)
    total_frames = submission.spec.duration_in_frames
    plan = plan_partitions(total_frames, self._settings.frames_per_partition)
    job_id = generate_job_id()

    await self._ledger.reserve(user_id=owner_id, job_id=job_id, amount=cost)

    now = utc_now()
    record = RenderJobRecord(
      job_id=job_id,
      owner_id=owner_id,
      spec=submission.to_stored_spec(),
      status=RenderStatus.QUEUED,
      cost=cost,
      created_at=now,
      updated_at=now,
      total_frames=total_frames,
      partition_count=plan.partition_count,
    )
    try:
      await self._jobs_repo.create_job(record)
    except Exception:
      # Never leave a hold without a job behind it.
      logger.exception("Render job creation failed after reservation; refunding job=%s owner=%s", job_id, owner_id)
      await self._ledger.refund(job_id)
      raise

    logger.info("Admitted render job=%s owner=%s cost=%d frames=%d partitions=%d", job_id, owner_id, cost, total_frames, plan.partition_count)
    if self._on_admitted is not None:
      self._on_admitted(job_id)
    return job_id
