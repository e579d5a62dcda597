from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.notifications.contracts import NotificationRecord
from app.render.models import RenderJobRecord, RenderStatus
from app.services.credit_ledger import LedgerEntryRecord


class RenderJobResponse(BaseModel):
  """Public view of a render job."""

  job_id: str
  status: str
  progress: float = Field(ge=0.0, le=1.0)
  cost: int
  retry_count: int
  output_kind: str
  output_url: str | None = None
  error_kind: str | None = None
  error_message: str | None = None
  cancel_requested: bool = False
  created_at: datetime
  updated_at: datetime
  completed_at: datetime | None = None
  model_config = ConfigDict(extra="forbid")


class RenderQuoteResponse(BaseModel):
  """Credit cost of a submission, without admitting it."""

  cost: int
  balance: int
  affordable: bool


class NotificationResponse(BaseModel):
  """One entry of the in-app notification feed."""

  id: str
  job_id: str
  kind: str
  title: str
  body: str
  data: dict[str, Any]
  created_at: datetime
  read_at: datetime | None = None
  read: bool


class UnreadCountResponse(BaseModel):
  unread: int


class MarkAllReadResponse(BaseModel):
  updated: int


class CreditBalanceResponse(BaseModel):
  balance: int


class LedgerEntryResponse(BaseModel):
  """One credit ledger movement."""

  id: str
  job_id: str | None
  delta: int
  amount: int
  reason: str
  created_at: datetime


def job_to_response(job: RenderJobRecord) -> RenderJobResponse:
  # Output and error fields only surface in the matching terminal state.
  return RenderJobResponse(
    job_id=job.job_id,
    status=job.status.value,
    progress=job.progress,
    cost=job.cost,
    retry_count=job.retry_count,
    output_kind=job.output_kind,
    output_url=job.output_url if job.status == RenderStatus.COMPLETE else None,
    error_kind=job.error_kind.value if job.error_kind and job.status == RenderStatus.FAILED else None,
    error_message=job.error_message if job.status == RenderStatus.FAILED else None,
    cancel_requested=job.cancel_requested,
    created_at=job.created_at,
    updated_at=job.updated_at,
    completed_at=job.completed_at,
  )


def notification_to_response(record: NotificationRecord) -> NotificationResponse:
  return NotificationResponse(
    id=record.notification_id,
    job_id=record.job_id,
    kind=record.kind.value,
    title=record.title,
    body=record.body,
    data=record.data,
    created_at=record.created_at,
    read_at=record.read_at,
    read=record.is_read,
  )


def ledger_entry_to_response(entry: LedgerEntryRecord) -> LedgerEntryResponse:
  return LedgerEntryResponse(id=entry.entry_id, job_id=entry.job_id, delta=entry.delta, amount=entry.amount, reason=entry.reason.value, created_at=entry.created_at)
