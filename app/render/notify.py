"""Write the user-facing notification for a terminal job."""

from __future__ import annotations

import logging

from app.notifications.contracts import NotificationDraft, NotificationKind, NotificationSink
from app.notifications.in_app_templates import render_in_app_template
from app.render.models import RenderJobRecord, RenderStatus

logger = logging.getLogger(__name__)

_TEMPLATES: dict[RenderStatus, tuple[NotificationKind, str]] = {
  RenderStatus.COMPLETE: (NotificationKind.RENDER_COMPLETE, "render_complete_v1"),
  RenderStatus.FAILED: (NotificationKind.RENDER_FAILED, "render_failed_v1"),
}


def build_notification(job: RenderJobRecord) -> NotificationDraft | None:
  """Map a terminal job to its notification; cancelled jobs get none."""
  mapping = _TEMPLATES.get(job.status)
  if mapping is None:
    return None
  kind, template_id = mapping
  data: dict[str, str] = {"job_id": job.job_id}
  if job.status == RenderStatus.COMPLETE:
    data["output_url"] = job.output_url or ""
  else:
    data["error_message"] = job.error_message or "Unknown error."
    data["error_kind"] = job.error_kind.value if job.error_kind else ""
  title, body = render_in_app_template(template_id=template_id, data=data)
  return NotificationDraft(user_id=job.owner_id, job_id=job.job_id, kind=kind, template_id=template_id, title=title, body=body, data=data)


class NotificationEmitter:
  """Emit at most one notification per (job_id, kind)."""

  def __init__(self, sink: NotificationSink) -> None:
    self._sink = sink

  async def notify(self, job: RenderJobRecord) -> bool:
    """Return True when this call created the notification."""
    if not job.is_terminal:
      raise ValueError(f"Cannot notify for non-terminal job {job.job_id} (status={job.status.value})")

    draft = build_notification(job)
    if draft is None:
      logger.debug("No notification for job=%s status=%s", job.job_id, job.status.value)
      return False

    created = await self._sink.emit(draft)
    if created:
      logger.info("Notified owner=%s job=%s kind=%s", job.owner_id, job.job_id, draft.kind.value)
    return created
