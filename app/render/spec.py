"""Submission validation, credit pricing and partition planning for render jobs."""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator, model_validator

from app.render.errors import InvalidSpecError
from app.render.models import PartitionPlan, PartitionRange

SUPPORTED_FPS = frozenset({24, 25, 30, 60})

# Output kind -> (codec passed to the fleet, content type, file extension).
OUTPUT_KINDS: dict[str, tuple[str, str, str]] = {
  "mp4": ("h264", "video/mp4", "mp4"),
  "webm": ("vp8", "video/webm", "webm"),
  "gif": ("gif", "image/gif", "gif"),
}

ImageSlot = Literal["poster", "logo", "product"]


class AnimationSegment(BaseModel):
  """One timed segment of the animation; layers are opaque to the orchestrator."""

  id: StrictStr = Field(min_length=1)
  start_frame: int = Field(ge=0, validation_alias=AliasChoices("startFrame", "start_frame"))
  duration_in_frames: int = Field(gt=0, validation_alias=AliasChoices("durationInFrames", "duration_in_frames"))
  layers: list[dict[str, Any]] = Field(default_factory=list)
  model_config = ConfigDict(extra="allow", populate_by_name=True)


class AnimationSpec(BaseModel):
  """Structural view of the animation spec; unknown keys pass through untouched."""

  duration_in_frames: int = Field(gt=0, validation_alias=AliasChoices("durationInFrames", "duration_in_frames"))
  fps: int
  width: int = Field(gt=0)
  height: int = Field(gt=0)
  segments: list[AnimationSegment] = Field(min_length=1)
  model_config = ConfigDict(extra="allow", populate_by_name=True)

  @field_validator("fps")
  @classmethod
  def check_fps(cls, value: int) -> int:
    if value not in SUPPORTED_FPS:
      raise ValueError(f"fps must be one of {sorted(SUPPORTED_FPS)}")
    return value

  @model_validator(mode="after")
  def check_segments_fit(self) -> AnimationSpec:
    # Segments may overlap for transitions but must not run past the end.
    for segment in self.segments:
      if segment.start_frame + segment.duration_in_frames > self.duration_in_frames:
        raise ValueError(f"segment '{segment.id}' ends after durationInFrames")
    return self

  @property
  def duration_seconds(self) -> float:
    return self.duration_in_frames / self.fps


class RenderSubmission(BaseModel):
  """Validated render request as handed to the worker fleet."""

  spec: AnimationSpec
  source_asset_url: StrictStr = Field(min_length=1, validation_alias=AliasChoices("sourceAssetUrl", "source_asset_url", "sourceImageUrl"))
  images: dict[ImageSlot, StrictStr] | None = Field(default=None, validation_alias=AliasChoices("optionalImages", "images"))
  audio_url: StrictStr | None = Field(default=None, validation_alias=AliasChoices("optionalAudioUrl", "audioUrl", "audio_url"))
  output_kind: Literal["mp4", "webm", "gif"] = Field(default="mp4", validation_alias=AliasChoices("outputKind", "output_kind"))
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("source_asset_url")
  @classmethod
  def check_source_asset(cls, value: str) -> str:
    normalized = value.strip()
    if not normalized:
      raise ValueError("source asset reference must not be blank")
    if not normalized.startswith(("https://", "http://", "gs://")):
      raise ValueError("source asset reference must be an http(s) or gs:// URL")
    return normalized

  def to_stored_spec(self) -> dict[str, Any]:
    """Serialize into the immutable JSON stored on the job."""
    return {
      "spec": self.spec.model_dump(mode="json", by_alias=False),
      "source_asset_url": self.source_asset_url,
      "images": dict(self.images) if self.images else None,
      "audio_url": self.audio_url,
      "output_kind": self.output_kind,
    }


def _format_validation_errors(exc: ValidationError) -> list[str]:
  """Render pydantic errors without echoing raw input values."""
  messages: list[str] = []
  for error in exc.errors():
    location = ".".join(str(part) for part in error.get("loc", ()))
    messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
  return messages


def parse_submission(payload: Any, *, max_duration_seconds: int) -> RenderSubmission:
  """Validate a raw submission payload or raise InvalidSpecError."""
  if isinstance(payload, RenderSubmission):
    submission = payload
  else:
    if not isinstance(payload, dict):
      raise InvalidSpecError("Render submission must be a JSON object.")
    try:
      submission = RenderSubmission.model_validate(payload)
    except ValidationError as exc:
      errors = _format_validation_errors(exc)
      raise InvalidSpecError("Render submission is invalid.", errors=errors) from exc

  if submission.spec.duration_seconds > max_duration_seconds:
    raise InvalidSpecError(f"Render duration exceeds the maximum of {max_duration_seconds} seconds.", errors=["spec.durationInFrames: too long"])
  return submission


def compute_credit_cost(submission: RenderSubmission, *, credits_per_block: int, block_seconds: int) -> int:
  """Return the credits charged for a submission; every started block is billed."""
  blocks = max(math.ceil(submission.spec.duration_seconds / block_seconds), 1)
  return credits_per_block * blocks


def plan_partitions(total_frames: int, frames_per_partition: int) -> PartitionPlan:
  """Split [0, total_frames) into fixed chunks; the last one may be shorter."""
  if total_frames <= 0:
    raise ValueError("total_frames must be positive")
  if frames_per_partition <= 0:
    raise ValueError("frames_per_partition must be positive")

  partitions: list[PartitionRange] = []
  for index, start in enumerate(range(0, total_frames, frames_per_partition)):
    end = min(start + frames_per_partition, total_frames) - 1
    partitions.append(PartitionRange(index=index, start_frame=start, end_frame=end))
  return PartitionPlan(total_frames=total_frames, frames_per_partition=frames_per_partition, partitions=partitions)


def output_format(output_kind: str) -> tuple[str, str, str]:
  """Return (codec, content_type, extension) for a supported output kind."""
  try:
    return OUTPUT_KINDS[output_kind]
  except KeyError as exc:
    raise InvalidSpecError(f"Unsupported output kind: {output_kind}") from exc
