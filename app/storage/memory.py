"""In-process implementations of the render collaborators.

Used when no database DSN is configured (local development) and by the test
suite. They honor the same idempotency and compare-and-set rules as the
Postgres/GCS implementations.
"""

from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Any

from app.notifications.contracts import NotificationDraft, NotificationRecord
from app.render.errors import InsufficientCreditsError
from app.render.models import TERMINAL_STATUSES, RenderJobRecord, RenderStatus, ensure_transition, utc_now
from app.schema.credits import LedgerReason
from app.services.credit_ledger import LedgerEntryRecord
from app.storage.render_jobs_repo import CANCEL_PREEMPTED_STATUSES, check_mutable_fields
from app.utils.ids import generate_entry_id

logger = logging.getLogger(__name__)


class InMemoryRenderJobsRepository:
  """Dict-backed render job store guarded by a single lock."""

  def __init__(self) -> None:
    self._jobs: dict[str, RenderJobRecord] = {}
    self._lock = asyncio.Lock()

  async def create_job(self, record: RenderJobRecord) -> None:
    async with self._lock:
      if record.job_id in self._jobs:
        raise ValueError(f"Render job already exists: {record.job_id}")
      self._jobs[record.job_id] = dataclasses.replace(record)

  async def get_job(self, job_id: str) -> RenderJobRecord | None:
    record = self._jobs.get(job_id)
    return dataclasses.replace(record) if record else None

  async def list_jobs(self, owner_id: str, *, limit: int = 20, offset: int = 0) -> list[RenderJobRecord]:
    owned = [record for record in self._jobs.values() if record.owner_id == owner_id]
    owned.sort(key=lambda record: record.created_at, reverse=True)
    return [dataclasses.replace(record) for record in owned[offset : offset + limit]]

  async def update_job(self, job_id: str, *, expected_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    check_mutable_fields(changes)
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None or record.status != expected_status:
        return None
      updated = dataclasses.replace(record, updated_at=utc_now(), **changes)
      self._jobs[job_id] = updated
      return dataclasses.replace(updated)

  async def transition(self, job_id: str, *, expected_status: RenderStatus, target_status: RenderStatus, **changes: Any) -> RenderJobRecord | None:
    ensure_transition(expected_status, target_status)
    check_mutable_fields(changes)
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None or record.status != expected_status:
        return None
      if target_status in CANCEL_PREEMPTED_STATUSES and record.cancel_requested:
        return None
      now = utc_now()
      completed_at = now if target_status in TERMINAL_STATUSES else record.completed_at
      updated = dataclasses.replace(record, status=target_status, updated_at=now, completed_at=completed_at, **changes)
      self._jobs[job_id] = updated
      return dataclasses.replace(updated)

  async def request_cancel(self, job_id: str) -> RenderJobRecord | None:
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is None:
        return None
      if not record.is_terminal and not record.cancel_requested:
        record = dataclasses.replace(record, cancel_requested=True, updated_at=utc_now())
        self._jobs[job_id] = record
      return dataclasses.replace(record)

  async def mark_settled(self, job_id: str) -> None:
    async with self._lock:
      record = self._jobs.get(job_id)
      if record is not None and record.is_terminal and record.settled_at is None:
        self._jobs[job_id] = dataclasses.replace(record, settled_at=utc_now())

  async def list_active(self) -> list[RenderJobRecord]:
    return [dataclasses.replace(record) for record in self._jobs.values() if not record.is_terminal]

  async def list_unsettled(self) -> list[RenderJobRecord]:
    return [dataclasses.replace(record) for record in self._jobs.values() if record.is_terminal and record.settled_at is None]


class InMemoryCreditLedger:
  """List-backed ledger; appends are serialized per user with an asyncio.Lock."""

  def __init__(self, *, initial_balances: dict[str, int] | None = None) -> None:
    self._entries: list[LedgerEntryRecord] = []
    self._user_locks: dict[str, asyncio.Lock] = {}
    for user_id, amount in (initial_balances or {}).items():
      self._append(user_id=user_id, job_id=None, delta=amount, amount=amount, reason=LedgerReason.GRANT)

  @property
  def entries(self) -> list[LedgerEntryRecord]:
    return list(self._entries)

  def _lock_for(self, user_id: str) -> asyncio.Lock:
    return self._user_locks.setdefault(user_id, asyncio.Lock())

  def _append(self, *, user_id: str, job_id: str | None, delta: int, amount: int, reason: LedgerReason) -> LedgerEntryRecord:
    entry = LedgerEntryRecord(entry_id=generate_entry_id(), user_id=user_id, job_id=job_id, delta=delta, amount=amount, reason=reason, created_at=datetime.datetime.now(datetime.UTC))
    self._entries.append(entry)
    return entry

  def _job_entry(self, job_id: str, reasons: tuple[LedgerReason, ...]) -> LedgerEntryRecord | None:
    for entry in self._entries:
      if entry.job_id == job_id and entry.reason in reasons:
        return entry
    return None

  def _balance(self, user_id: str) -> int:
    return sum(entry.delta for entry in self._entries if entry.user_id == user_id)

  async def reserve(self, *, user_id: str, job_id: str, amount: int) -> LedgerEntryRecord:
    if amount <= 0:
      raise ValueError("amount must be positive.")
    async with self._lock_for(user_id):
      existing = self._job_entry(job_id, (LedgerReason.RESERVE,))
      if existing is not None:
        return existing
      available = self._balance(user_id)
      if available < amount:
        raise InsufficientCreditsError(required=amount, available=available)
      return self._append(user_id=user_id, job_id=job_id, delta=-amount, amount=amount, reason=LedgerReason.RESERVE)

  async def _settle(self, job_id: str, reason: LedgerReason) -> bool:
    reservation = self._job_entry(job_id, (LedgerReason.RESERVE,))
    if reservation is None:
      logger.info("No reservation to settle job=%s reason=%s", job_id, reason.value)
      return False
    async with self._lock_for(reservation.user_id):
      if self._job_entry(job_id, (LedgerReason.COMMIT, LedgerReason.REFUND)) is not None:
        return False
      delta = reservation.amount if reason == LedgerReason.REFUND else 0
      self._append(user_id=reservation.user_id, job_id=job_id, delta=delta, amount=reservation.amount, reason=reason)
      return True

  async def commit(self, job_id: str) -> bool:
    return await self._settle(job_id, LedgerReason.COMMIT)

  async def refund(self, job_id: str) -> bool:
    return await self._settle(job_id, LedgerReason.REFUND)

  async def balance(self, user_id: str) -> int:
    return self._balance(user_id)

  async def grant(self, *, user_id: str, amount: int, reason: LedgerReason = LedgerReason.GRANT) -> LedgerEntryRecord:
    if reason not in (LedgerReason.GRANT, LedgerReason.ADJUSTMENT):
      raise ValueError("grant only writes grant or adjustment entries.")
    if amount == 0:
      raise ValueError("amount must be non-zero.")
    async with self._lock_for(user_id):
      return self._append(user_id=user_id, job_id=None, delta=amount, amount=abs(amount), reason=reason)

  async def list_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    owned = [entry for entry in self._entries if entry.user_id == user_id]
    return list(reversed(owned))[:limit]


class InMemoryNotificationSink:
  """Notification feed keyed by (job_id, kind)."""

  def __init__(self) -> None:
    self._records: dict[tuple[str, str], NotificationRecord] = {}

  @property
  def records(self) -> list[NotificationRecord]:
    return list(self._records.values())

  async def emit(self, draft: NotificationDraft) -> bool:
    key = (draft.job_id, draft.kind.value)
    if key in self._records:
      return False
    self._records[key] = NotificationRecord(
      notification_id=generate_entry_id(),
      user_id=draft.user_id,
      job_id=draft.job_id,
      kind=draft.kind,
      title=draft.title,
      body=draft.body,
      data=dict(draft.data),
      created_at=datetime.datetime.now(datetime.UTC),
    )
    return True

  async def list_for_user(self, user_id: str, *, limit: int = 50, unread_only: bool = False) -> list[NotificationRecord]:
    owned = [record for record in self._records.values() if record.user_id == user_id and (not unread_only or record.read_at is None)]
    owned.sort(key=lambda record: record.created_at, reverse=True)
    return owned[:limit]

  async def mark_read(self, user_id: str, notification_id: str) -> bool:
    for key, record in self._records.items():
      if record.notification_id == notification_id and record.user_id == user_id:
        if record.read_at is None:
          self._records[key] = dataclasses.replace(record, read_at=datetime.datetime.now(datetime.UTC))
        return True
    return False

  async def mark_all_read(self, user_id: str) -> int:
    now = datetime.datetime.now(datetime.UTC)
    changed = 0
    for key, record in list(self._records.items()):
      if record.user_id == user_id and record.read_at is None:
        self._records[key] = dataclasses.replace(record, read_at=now)
        changed += 1
    return changed

  async def unread_count(self, user_id: str) -> int:
    return sum(1 for record in self._records.values() if record.user_id == user_id and record.read_at is None)


class InMemoryObjectStore:
  """Path-keyed object map; writes to the same path overwrite."""

  def __init__(self, *, base_url: str = "memory://renders") -> None:
    self._base_url = base_url.rstrip("/")
    self.objects: dict[str, tuple[bytes, str]] = {}
    self.put_count = 0

  async def put(self, path: str, data: bytes, content_type: str) -> None:
    self.put_count += 1
    self.objects[path] = (bytes(data), content_type)

  def public_url(self, path: str) -> str:
    return f"{self._base_url}/{path}"
