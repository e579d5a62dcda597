"""Append-only credit ledger with reserve/commit/refund semantics."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.render.errors import InsufficientCreditsError
from app.schema.credits import CreditAccount, CreditLedgerEntry, LedgerReason
from app.utils.ids import generate_entry_id

logger = logging.getLogger(__name__)

SETTLEMENT_REASONS = (LedgerReason.COMMIT.value, LedgerReason.REFUND.value)


@dataclass(frozen=True)
class LedgerEntryRecord:
  """Immutable view of one ledger entry."""

  entry_id: str
  user_id: str
  job_id: str | None
  delta: int
  amount: int
  reason: LedgerReason
  created_at: datetime.datetime


class CreditLedger(Protocol):
  """Contract for credit accounting used by admission and reconciliation."""

  async def reserve(self, *, user_id: str, job_id: str, amount: int) -> LedgerEntryRecord:
    """Hold credits for a job or raise InsufficientCreditsError; idempotent per job."""
    ...

  async def commit(self, job_id: str) -> bool:
    """Realize a job's reservation; False when already settled or nothing was reserved."""
    ...

  async def refund(self, job_id: str) -> bool:
    """Return a job's reservation; False when already settled or nothing was reserved."""
    ...

  async def balance(self, user_id: str) -> int:
    """Return the sum of all deltas for a user."""
    ...

  async def grant(self, *, user_id: str, amount: int, reason: LedgerReason = LedgerReason.GRANT) -> LedgerEntryRecord:
    """Add credits outside any job (purchases, adjustments)."""
    ...

  async def list_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    """Return the most recent entries for a user, newest first."""
    ...


def _utc_now() -> datetime.datetime:
  return datetime.datetime.now(datetime.UTC)


def _settlement_delta(reason: LedgerReason, reserved_amount: int) -> int:
  """Commit keeps the hold; refund returns it."""
  if reason == LedgerReason.COMMIT:
    return 0
  if reason == LedgerReason.REFUND:
    return reserved_amount
  raise ValueError(f"Not a settlement reason: {reason}")


def _to_record(row: CreditLedgerEntry) -> LedgerEntryRecord:
  return LedgerEntryRecord(entry_id=row.id, user_id=row.user_id, job_id=row.job_id, delta=int(row.delta), amount=int(row.amount), reason=LedgerReason(row.reason), created_at=row.created_at)


class PostgresCreditLedger:
  """Persist ledger entries to Postgres, serializing per user via the account row lock."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def _lock_account(self, session: AsyncSession, user_id: str) -> None:
    # Create the account row on first use, then hold its lock until the transaction ends.
    await session.execute(pg_insert(CreditAccount).values(user_id=user_id).on_conflict_do_nothing(index_elements=[CreditAccount.user_id]))
    await session.execute(select(CreditAccount.user_id).where(CreditAccount.user_id == user_id).with_for_update())

  async def _balance_in_session(self, session: AsyncSession, user_id: str) -> int:
    result = await session.execute(select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.user_id == user_id))
    return int(result.scalar_one())

  async def _job_entry(self, session: AsyncSession, job_id: str, reasons: tuple[str, ...]) -> CreditLedgerEntry | None:
    stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.job_id == job_id, CreditLedgerEntry.reason.in_(reasons)).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()

  async def reserve(self, *, user_id: str, job_id: str, amount: int) -> LedgerEntryRecord:
    if amount <= 0:
      raise ValueError("amount must be positive.")

    async with self._session_factory() as session:
      async with session.begin():
        await self._lock_account(session, user_id)
        # A repeated reserve for the same job returns the original hold.
        existing = await self._job_entry(session, job_id, (LedgerReason.RESERVE.value,))
        if existing is not None:
          return _to_record(existing)

        available = await self._balance_in_session(session, user_id)
        if available < amount:
          raise InsufficientCreditsError(required=amount, available=available)

        entry = CreditLedgerEntry(id=generate_entry_id(), user_id=user_id, job_id=job_id, delta=-amount, amount=amount, reason=LedgerReason.RESERVE.value, created_at=_utc_now())
        session.add(entry)
        await session.flush()
        record = _to_record(entry)

    logger.info("Reserved credits user=%s job=%s amount=%d", user_id, job_id, amount)
    return record

  async def _settle(self, job_id: str, reason: LedgerReason) -> bool:
    try:
      async with self._session_factory() as session:
        async with session.begin():
          reservation = await self._job_entry(session, job_id, (LedgerReason.RESERVE.value,))
          if reservation is None:
            logger.info("No reservation to settle job=%s reason=%s", job_id, reason.value)
            return False

          await self._lock_account(session, reservation.user_id)
          settled = await self._job_entry(session, job_id, SETTLEMENT_REASONS)
          if settled is not None:
            logger.debug("Job already settled job=%s existing=%s requested=%s", job_id, settled.reason, reason.value)
            return False

          delta = _settlement_delta(reason, int(reservation.amount))
          session.add(CreditLedgerEntry(id=generate_entry_id(), user_id=reservation.user_id, job_id=job_id, delta=delta, amount=int(reservation.amount), reason=reason.value, created_at=_utc_now()))
          await session.flush()
    except IntegrityError:
      # A concurrent writer settled first; the unique settlement index kept us honest.
      logger.info("Concurrent settlement detected job=%s reason=%s", job_id, reason.value)
      return False

    logger.info("Settled credits job=%s reason=%s", job_id, reason.value)
    return True

  async def commit(self, job_id: str) -> bool:
    return await self._settle(job_id, LedgerReason.COMMIT)

  async def refund(self, job_id: str) -> bool:
    return await self._settle(job_id, LedgerReason.REFUND)

  async def balance(self, user_id: str) -> int:
    async with self._session_factory() as session:
      return await self._balance_in_session(session, user_id)

  async def grant(self, *, user_id: str, amount: int, reason: LedgerReason = LedgerReason.GRANT) -> LedgerEntryRecord:
    if reason not in (LedgerReason.GRANT, LedgerReason.ADJUSTMENT):
      raise ValueError("grant only writes grant or adjustment entries.")
    if amount == 0:
      raise ValueError("amount must be non-zero.")

    async with self._session_factory() as session:
      async with session.begin():
        await self._lock_account(session, user_id)
        entry = CreditLedgerEntry(id=generate_entry_id(), user_id=user_id, job_id=None, delta=amount, amount=abs(amount), reason=reason.value, created_at=_utc_now())
        session.add(entry)
        await session.flush()
        return _to_record(entry)

  async def list_entries(self, user_id: str, *, limit: int = 50) -> list[LedgerEntryRecord]:
    async with self._session_factory() as session:
      stmt = select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id).order_by(CreditLedgerEntry.created_at.desc()).limit(limit)
      result = await session.execute(stmt)
      return [_to_record(row) for row in result.scalars().all()]
