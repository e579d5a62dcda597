"""SQLAlchemy model for render jobs."""

from __future__ import annotations

import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RenderJob(Base):
  """One render request and its lifecycle as tracked by the orchestrator."""

  __tablename__ = "render_jobs"
  __table_args__ = (
    Index("ix_render_jobs_owner_created", "owner_id", "created_at"),
    # Recovery scans only look at unfinished or unsettled work.
    Index("ix_render_jobs_active", "status", postgresql_where=text("status IN ('queued', 'dispatched', 'rendering', 'finalizing')")),
    Index("ix_render_jobs_unsettled", "job_id", postgresql_where=text("settled_at IS NULL AND status IN ('complete', 'failed', 'cancelled')")),
  )

  job_id: Mapped[str] = mapped_column(String, primary_key=True)
  owner_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  spec_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  status: Mapped[str] = mapped_column(String, nullable=False, index=True)
  progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
  cost: Mapped[int] = mapped_column(Integer, nullable=False)
  retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  total_frames: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  partition_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  tracking_id: Mapped[str | None] = mapped_column(String, nullable=True)
  resource_locator: Mapped[str | None] = mapped_column(String, nullable=True)
  output_locator: Mapped[str | None] = mapped_column(Text, nullable=True)
  output_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
  output_path: Mapped[str | None] = mapped_column(String, nullable=True)
  output_url: Mapped[str | None] = mapped_column(Text, nullable=True)
  error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
  cancel_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  dispatched_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  settled_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
