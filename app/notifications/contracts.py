"""Contracts for the in-app render notification feed."""

from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass, field
from typing import Any, Protocol


class NotificationKind(str, enum.Enum):
  """Kinds of user-facing render notifications."""

  RENDER_COMPLETE = "render_complete"
  RENDER_FAILED = "render_failed"


@dataclass(frozen=True)
class NotificationDraft:
  """Notification ready to be appended to a user's feed."""

  user_id: str
  job_id: str
  kind: NotificationKind
  template_id: str
  title: str
  body: str
  data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationRecord:
  """Stored notification as returned to the feed."""

  notification_id: str
  user_id: str
  job_id: str
  kind: NotificationKind
  title: str
  body: str
  data: dict[str, Any]
  created_at: datetime.datetime
  read_at: datetime.datetime | None = None

  @property
  def is_read(self) -> bool:
    return self.read_at is not None


class NotificationSink(Protocol):
  """Append-only per-user notification feed keyed by (job_id, kind)."""

  async def emit(self, draft: NotificationDraft) -> bool:
    """Insert the notification; False when one already exists for (job_id, kind)."""
    ...

  async def list_for_user(self, user_id: str, *, limit: int = 50, unread_only: bool = False) -> list[NotificationRecord]:
    """Return the user's notifications, newest first."""
    ...

  async def mark_read(self, user_id: str, notification_id: str) -> bool:
    """Mark one notification read; False when it does not belong to the user."""
    ...

  async def mark_all_read(self, user_id: str) -> int:
    """Mark every unread notification read and return how many changed."""
    ...

  async def unread_count(self, user_id: str) -> int:
    """Count unread notifications for a user."""
    ...
