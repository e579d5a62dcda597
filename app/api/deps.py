"""Shared FastAPI dependencies for render collaborators."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.notifications.contracts import NotificationSink
from app.render.service import RenderService
from app.storage.factory import RenderComponents


def get_render_components(request: Request) -> RenderComponents:
  """Return the collaborators built during lifespan startup."""
  components = getattr(request.app.state, "render_components", None)
  if components is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Render engine is starting")
  return components


def get_render_service(request: Request) -> RenderService:
  return get_render_components(request).service


def get_notification_sink(request: Request) -> NotificationSink:
  return get_render_components(request).sink
