"""SQLAlchemy model for in-app render notifications."""

from __future__ import annotations

import datetime

from sqlalchemy import DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class RenderNotification(Base):
  """Persist in-app notifications for user polling; one row per (job, kind)."""

  __tablename__ = "render_notifications"
  __table_args__ = (UniqueConstraint("job_id", "kind", name="ux_render_notifications_job_kind"),)

  id: Mapped[str] = mapped_column(String, primary_key=True)
  user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
  job_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
  kind: Mapped[str] = mapped_column(String, nullable=False)
  template_id: Mapped[str] = mapped_column(String, nullable=False)
  title: Mapped[str] = mapped_column(String, nullable=False)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  data_json: Mapped[dict] = mapped_column(JSONB, nullable=False)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  read_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
