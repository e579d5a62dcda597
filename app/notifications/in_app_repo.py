"""Repository helpers for in-app render notifications."""

from __future__ import annotations

import datetime
import logging

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.notifications.contracts import NotificationDraft, NotificationKind, NotificationRecord
from app.schema.notifications import RenderNotification
from app.utils.ids import generate_entry_id

logger = logging.getLogger(__name__)


def _to_record(row: RenderNotification) -> NotificationRecord:
  return NotificationRecord(notification_id=row.id, user_id=row.user_id, job_id=row.job_id, kind=NotificationKind(row.kind), title=row.title, body=row.body, data=dict(row.data_json or {}), created_at=row.created_at, read_at=row.read_at)


class PostgresNotificationSink:
  """Persist in-app notifications to Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
    self._session_factory = session_factory

  async def emit(self, draft: NotificationDraft) -> bool:
    """Insert a notification row unless one exists for (job_id, kind)."""
    values = {
      "id": generate_entry_id(),
      "user_id": draft.user_id,
      "job_id": draft.job_id,
      "kind": draft.kind.value,
      "template_id": draft.template_id,
      "title": draft.title,
      "body": draft.body,
      "data_json": draft.data,
    }
    stmt = pg_insert(RenderNotification).values(**values).on_conflict_do_nothing(constraint="ux_render_notifications_job_kind").returning(RenderNotification.id)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      inserted = result.scalar_one_or_none() is not None
      await session.commit()

    if not inserted:
      logger.debug("Notification already present job=%s kind=%s", draft.job_id, draft.kind.value)
    return inserted

  async def list_for_user(self, user_id: str, *, limit: int = 50, unread_only: bool = False) -> list[NotificationRecord]:
    stmt = select(RenderNotification).where(RenderNotification.user_id == user_id)
    if unread_only:
      stmt = stmt.where(RenderNotification.read_at.is_(None))
    stmt = stmt.order_by(RenderNotification.created_at.desc()).limit(limit)
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return [_to_record(row) for row in result.scalars().all()]

  async def mark_read(self, user_id: str, notification_id: str) -> bool:
    async with self._session_factory() as session:
      row = await session.get(RenderNotification, notification_id)
      if row is None or row.user_id != user_id:
        return False
      if row.read_at is None:
        row.read_at = datetime.datetime.now(datetime.UTC)
        await session.commit()
      return True

  async def mark_all_read(self, user_id: str) -> int:
    stmt = update(RenderNotification).where(RenderNotification.user_id == user_id, RenderNotification.read_at.is_(None)).values(read_at=func.now())
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      await session.commit()
      return int(result.rowcount or 0)

  async def unread_count(self, user_id: str) -> int:
    stmt = select(func.count()).select_from(RenderNotification).where(RenderNotification.user_id == user_id, RenderNotification.read_at.is_(None))
    async with self._session_factory() as session:
      result = await session.execute(stmt)
      return int(result.scalar_one())
