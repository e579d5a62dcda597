from __future__ import annotations

import asyncio

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from app.render.errors import FleetRejectedError, FleetTransientError, StorageCommitError
from app.utils.retry import RetryExhaustedError, backoff_delay_ms, classify_failure, execute_with_retry


@pytest.mark.parametrize(
  ("exc", "retryable", "category"),
  [
    (FleetTransientError("503"), True, "fleet_transient"),
    (FleetRejectedError("400"), False, "fleet_rejected"),
    (asyncio.TimeoutError(), True, "timeout"),
    (httpx.ConnectError("refused"), True, "connectivity_error"),
    (StorageCommitError("gcs down"), True, "storage_error"),
    (IntegrityError("INSERT", {}, Exception("duplicate key")), False, "integrity_error"),
    (KeyError("job_id"), False, "programming_error"),
    (RuntimeError("???"), False, "unknown_error"),
  ],
)
def test_classify_failure(exc: BaseException, retryable: bool, category: str) -> None:
  classification = classify_failure(exc)
  assert classification.retryable is retryable
  assert classification.category == category


def test_backoff_is_exponential_and_capped() -> None:
  assert backoff_delay_ms(1, initial_backoff_ms=200, max_backoff_ms=5000, jitter=False) == 200
  assert backoff_delay_ms(3, initial_backoff_ms=200, max_backoff_ms=5000, jitter=False) == 800
  assert backoff_delay_ms(10, initial_backoff_ms=200, max_backoff_ms=5000, jitter=False) == 5000
  jittered = backoff_delay_ms(2, initial_backoff_ms=200, max_backoff_ms=5000, jitter=True)
  assert 300 <= jittered <= 500


@pytest.mark.anyio
async def test_execute_with_retry_recovers_from_transient_failures() -> None:
  calls = {"count": 0}
  sleeps: list[float] = []

  async def _flaky() -> str:
    calls["count"] += 1
    if calls["count"] < 3:
      raise FleetTransientError("busy")
    return "ok"

  async def _record_sleep(seconds: float) -> None:
    sleeps.append(seconds)

  outcome = await execute_with_retry(operation_name="flaky", func=_flaky, max_attempts=3, jitter=False, sleep=_record_sleep)

  assert outcome.result == "ok"
  assert outcome.attempts == 3
  assert sleeps == [0.2, 0.4]


@pytest.mark.anyio
async def test_execute_with_retry_stops_on_permanent_failure() -> None:
  calls = {"count": 0}

  async def _rejected() -> None:
    calls["count"] += 1
    raise FleetRejectedError("bad request")

  with pytest.raises(RetryExhaustedError) as excinfo:
    await execute_with_retry(operation_name="rejected", func=_rejected, max_attempts=5)

  assert calls["count"] == 1
  assert excinfo.value.attempts == 1
  assert isinstance(excinfo.value.last_error, FleetRejectedError)


@pytest.mark.anyio
async def test_per_attempt_timeout_counts_as_transient() -> None:
  async def _hang() -> None:
    await asyncio.sleep(10)

  async def _no_sleep(_seconds: float) -> None:
    return None

  with pytest.raises(RetryExhaustedError) as excinfo:
    await execute_with_retry(operation_name="hang", func=_hang, max_attempts=2, timeout_seconds=0.01, sleep=_no_sleep)

  assert excinfo.value.attempts == 2
  assert excinfo.value.classification.category == "timeout"


@pytest.mark.anyio
async def test_max_attempts_must_be_positive() -> None:
  async def _noop() -> None:
    return None

  with pytest.raises(ValueError):
    await execute_with_retry(operation_name="noop", func=_noop, max_attempts=0)
