from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_notification_sink
from app.api.models import MarkAllReadResponse, NotificationResponse, UnreadCountResponse, notification_to_response
from app.core.security import get_owner_id
from app.notifications.contracts import NotificationSink

router = APIRouter()


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
  owner_id: str = Depends(get_owner_id),  # noqa: B008
  sink: NotificationSink = Depends(get_notification_sink),  # noqa: B008
  limit: int = Query(20, ge=1, le=100),  # noqa: B008
  unread_only: bool = Query(False),  # noqa: B008
) -> list[NotificationResponse]:
  """
  Poll for recent render notifications for the current user.

  - **limit**: Max number of notifications to return.
  - **unread_only**: Only return notifications that have not been read.
  """
  records = await sink.list_for_user(owner_id, limit=limit, unread_only=unread_only)
  return [notification_to_response(record) for record in records]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(owner_id: str = Depends(get_owner_id), sink: NotificationSink = Depends(get_notification_sink)) -> UnreadCountResponse:  # noqa: B008
  return UnreadCountResponse(unread=await sink.unread_count(owner_id))


@router.post("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(owner_id: str = Depends(get_owner_id), sink: NotificationSink = Depends(get_notification_sink)) -> MarkAllReadResponse:  # noqa: B008
  """Mark every unread notification as read."""
  return MarkAllReadResponse(updated=await sink.mark_all_read(owner_id))


@router.post("/{notification_id}/read", status_code=status.HTTP_204_NO_CONTENT)
async def mark_read(notification_id: str, owner_id: str = Depends(get_owner_id), sink: NotificationSink = Depends(get_notification_sink)) -> None:  # noqa: B008
  """Mark one notification as read."""
  if not await sink.mark_read(owner_id, notification_id):
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
