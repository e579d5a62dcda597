"""Bounded retry for fleet, storage and database calls with transient vs permanent classification."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from app.render.errors import FleetRejectedError, FleetTransientError, StorageCommitError

logger = logging.getLogger(__name__)

# Postgres SQLSTATEs that indicate a transaction conflict rather than bad data.
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


@dataclass(frozen=True)
class FailureClassification:
  """Classification result for a failed call."""

  retryable: bool
  reason: str
  category: str


def _extract_sqlstate(exc: Exception) -> str | None:
  """Extract Postgres SQLSTATE from a SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    for attr in ("pgcode", "sqlstate"):
      value = getattr(exc.orig, attr, None)
      if value:
        return str(value)
  return None


def classify_failure(exc: BaseException) -> FailureClassification:
  """
  Classify a failure as retryable or permanent.

  Retryable (transient):
    - timeouts (asyncio, httpx)
    - transport errors and fleet 5xx/429 responses
    - object store commit errors
    - Postgres serialization failures and deadlocks

  Permanent:
    - fleet 4xx rejections
    - integrity violations
    - programming errors
  """
  if isinstance(exc, FleetRejectedError):
    return FailureClassification(retryable=False, reason=str(exc) or "Fleet rejected request", category="fleet_rejected")

  if isinstance(exc, FleetTransientError):
    return FailureClassification(retryable=True, reason=str(exc) or "Fleet transient failure", category="fleet_transient")

  if isinstance(exc, TimeoutError | asyncio.TimeoutError | httpx.TimeoutException):
    return FailureClassification(retryable=True, reason="Call timed out", category="timeout")

  if isinstance(exc, httpx.TransportError):
    return FailureClassification(retryable=True, reason=f"Transport error: {type(exc).__name__}", category="connectivity_error")

  if isinstance(exc, StorageCommitError):
    return FailureClassification(retryable=True, reason=str(exc) or "Storage commit failed", category="storage_error")

  sqlstate = _extract_sqlstate(exc) if isinstance(exc, Exception) else None
  if sqlstate in _RETRYABLE_SQLSTATES:
    return FailureClassification(retryable=True, reason=f"Transaction conflict (sqlstate={sqlstate})", category="serialization_conflict")

  if isinstance(exc, IntegrityError):
    return FailureClassification(retryable=False, reason="Integrity constraint violation", category="integrity_error")

  if isinstance(exc, OperationalError):
    error_msg = str(exc).lower()
    if any(pattern in error_msg for pattern in ["connection", "timeout", "reset", "broken pipe"]):
      return FailureClassification(retryable=True, reason="Transient connection error", category="connectivity_error")
    return FailureClassification(retryable=False, reason="Operational error (unknown cause)", category="operational_error_unknown")

  if isinstance(exc, AttributeError | TypeError | ValueError | KeyError | IndexError):
    return FailureClassification(retryable=False, reason=f"Programming error: {type(exc).__name__}", category="programming_error")

  return FailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", category="unknown_error")


@dataclass(frozen=True)
class RetryOutcome:
  """Result of a retried call plus how many attempts it took."""

  result: Any
  attempts: int


class RetryExhaustedError(Exception):
  """Raised when every attempt failed or a permanent failure stopped the loop."""

  def __init__(self, *, operation_name: str, attempts: int, last_error: BaseException, classification: FailureClassification) -> None:
    super().__init__(f"{operation_name} failed after {attempts} attempt(s): {last_error}")
    self.operation_name = operation_name
    self.attempts = attempts
    self.last_error = last_error
    self.classification = classification


def backoff_delay_ms(attempt: int, *, initial_backoff_ms: int, max_backoff_ms: int, jitter: bool) -> float:
  """Exponential backoff for the given 1-based attempt with optional +/-25% jitter."""
  delay = float(min(initial_backoff_ms * (2 ** (attempt - 1)), max_backoff_ms))
  if jitter:
    jitter_range = delay * 0.25
    delay += random.uniform(-jitter_range, jitter_range)
  return max(delay, 0.0)


async def execute_with_retry(
  *,
  operation_name: str,
  func: Callable[[], Awaitable[Any]],
  max_attempts: int,
  timeout_seconds: float | None = None,
  initial_backoff_ms: int = 200,
  max_backoff_ms: int = 5000,
  jitter: bool = True,
  classify: Callable[[BaseException], FailureClassification] = classify_failure,
  sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome:
  """
  Run an idempotent async call with bounded retries.

  Args:
    operation_name: Label for logs (e.g. "fleet_dispatch job=...").
    func: Zero-arg coroutine factory; invoked once per attempt.
    max_attempts: Total attempts including the first one.
    timeout_seconds: Per-attempt timeout; expiry counts as a transient failure.
    classify: Decides whether a failure is worth another attempt.
    sleep: Injected for tests.

  Raises:
    RetryExhaustedError: permanent failure or attempts exhausted.
  """
  if max_attempts < 1:
    raise ValueError("max_attempts must be >= 1")

  attempt = 0
  while True:
    attempt += 1
    try:
      if timeout_seconds is not None:
        result = await asyncio.wait_for(func(), timeout=timeout_seconds)
      else:
        result = await func()
      if attempt > 1:
        logger.info("Operation succeeded after retry: operation=%s attempt=%d/%d", operation_name, attempt, max_attempts)
      return RetryOutcome(result=result, attempts=attempt)

    except asyncio.CancelledError:
      raise

    except Exception as exc:  # noqa: BLE001
      classification = classify(exc)
      logger.warning(
        "Operation failed: operation=%s attempt=%d/%d category=%s retryable=%s reason=%s",
        operation_name,
        attempt,
        max_attempts,
        classification.category,
        classification.retryable,
        classification.reason,
        exc_info=(not classification.retryable),
      )

      if not classification.retryable or attempt >= max_attempts:
        logger.error("Operation giving up: operation=%s attempts=%d category=%s", operation_name, attempt, classification.category)
        raise RetryExhaustedError(operation_name=operation_name, attempts=attempt, last_error=exc, classification=classification) from exc

      delay_ms = backoff_delay_ms(attempt, initial_backoff_ms=initial_backoff_ms, max_backoff_ms=max_backoff_ms, jitter=jitter)
      logger.info("Retrying after backoff: operation=%s attempt=%d/%d backoff_ms=%.1f", operation_name, attempt, max_attempts, delay_ms)
      await sleep(delay_ms / 1000.0)
