"""Error taxonomy for render orchestration.

Every failure is tagged with a ``RenderErrorKind`` so callers match on the kind
instead of parsing message text. Validation and balance errors are raised to the
caller before any side effect; everything after admission is recorded on the job.
"""

from __future__ import annotations

import enum


class RenderErrorKind(str, enum.Enum):
  """Closed set of render failure kinds."""

  INVALID_SPEC = "invalid_spec"
  INSUFFICIENT_CREDITS = "insufficient_credits"
  DISPATCH_FAILURE = "dispatch_failure"
  POLL_TIMEOUT = "poll_timeout"
  WORKER_FATAL_ERROR = "worker_fatal_error"
  STORAGE_ERROR = "storage_error"
  JOB_TIMEOUT = "job_timeout"
  CANCELLED = "cancelled"


class RenderError(Exception):
  """Base error carrying a structured kind."""

  kind: RenderErrorKind = RenderErrorKind.WORKER_FATAL_ERROR

  def __init__(self, message: str, *, kind: RenderErrorKind | None = None) -> None:
    super().__init__(message)
    if kind is not None:
      self.kind = kind

  @property
  def message(self) -> str:
    return str(self)


class InvalidSpecError(RenderError):
  """Raised when a submission is structurally malformed."""

  kind = RenderErrorKind.INVALID_SPEC

  def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
    super().__init__(message)
    self.errors = list(errors or [])


class InsufficientCreditsError(RenderError):
  """Raised when the balance cannot cover a reservation."""

  kind = RenderErrorKind.INSUFFICIENT_CREDITS

  def __init__(self, *, required: int, available: int) -> None:
    super().__init__(f"Insufficient credits: {available} available, {required} required")
    self.required = required
    self.available = available


class RenderJobNotFoundError(LookupError):
  """Raised when a job id is unknown or not visible to the caller."""


class InvalidTransitionError(RuntimeError):
  """Raised when a status change is not allowed by the state machine."""


class FleetError(Exception):
  """Base class for worker fleet call failures."""


class FleetTransientError(FleetError):
  """Fleet call failed in a way that may succeed on retry (timeouts, 5xx, 429)."""


class FleetRejectedError(FleetError):
  """Fleet refused the call permanently (4xx other than 429)."""


class StorageCommitError(Exception):
  """Object store write or artifact fetch failed."""
