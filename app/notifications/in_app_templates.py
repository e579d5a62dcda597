"""Templates for in-app notifications."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class InAppTemplate:
  """Define an in-app notification template."""

  template_id: str
  title_template: str
  body_template: str
  required_keys: set[str]


TEMPLATES: dict[str, InAppTemplate] = {
  "render_complete_v1": InAppTemplate(template_id="render_complete_v1", title_template="Your video is ready", body_template="Render {{job_id}} finished. Your video is ready to download.", required_keys={"job_id"}),
  "render_failed_v1": InAppTemplate(template_id="render_failed_v1", title_template="Video render failed", body_template="Render {{job_id}} failed: {{error_message}} Your credits have been refunded.", required_keys={"job_id", "error_message"}),
}


def render_in_app_template(*, template_id: str, data: dict[str, Any]) -> tuple[str, str]:
  """Render a template into a title and body string."""
  template = TEMPLATES.get(template_id)
  if template is None:
    raise ValueError(f"Unknown in-app template: {template_id}")
  missing = sorted(template.required_keys - set(data.keys()))
  if missing:
    raise ValueError(f"Missing placeholders for template '{template_id}': {', '.join(missing)}")
  title = template.title_template
  body = template.body_template
  for key, value in data.items():
    title = title.replace(f"{{{{{key}}}}}", str(value))
    body = body.replace(f"{{{{{key}}}}}", str(value))
  return title, body
