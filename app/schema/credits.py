"""SQLAlchemy models for the append-only credit ledger."""

from __future__ import annotations

import datetime
import enum

from sqlalchemy import DateTime, Index, Integer, String, func, text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class LedgerReason(str, enum.Enum):
  """Why a ledger entry was written."""

  RESERVE = "reserve"
  COMMIT = "commit"
  REFUND = "refund"
  GRANT = "grant"
  ADJUSTMENT = "adjustment"


class CreditAccount(Base):
  """Per-user row locked FOR UPDATE to serialize balance-check-then-append."""

  __tablename__ = "credit_accounts"

  user_id: Mapped[str] = mapped_column(String, primary_key=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class CreditLedgerEntry(Base):
  """Immutable credit movement; the balance is the sum of delta."""

  __tablename__ = "credit_ledger_entries"
  __table_args__ = (
    Index("ux_credit_ledger_job_reason", "job_id", "reason", unique=True, postgresql_where=text("job_id IS NOT NULL")),
    # A job settles once: either a commit or a refund, never both.
    Index("ux_credit_ledger_job_settlement", "job_id", unique=True, postgresql_where=text("job_id IS NOT NULL AND reason IN ('commit', 'refund')")),
    Index("ix_credit_ledger_user_created", "user_id", "created_at"),
  )

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  job_id: Mapped[str | None] = mapped_column(String, nullable=True)
  delta: Mapped[int] = mapped_column(Integer, nullable=False)
  amount: Mapped[int] = mapped_column(Integer, nullable=False)
  reason: Mapped[str] = mapped_column(String, nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
