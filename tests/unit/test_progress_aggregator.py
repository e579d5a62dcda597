from __future__ import annotations

import datetime
import logging
import math

import pytest

from app.render.errors import FleetTransientError, RenderErrorKind
from app.render.models import RenderStatus
from app.render.progress import ProgressAggregator, clamp_progress
from app.services.worker_fleet import FleetProgress
from tests.render_fakes import OUTPUT_LOCATOR, ScriptedFleet, cancel_active_jobs, finished, make_settings, progress


def test_clamp_progress_is_bounded_and_monotonic() -> None:
  assert clamp_progress(0.5, 0.6) == 0.6
  assert clamp_progress(0.7, 0.6) == 0.7
  assert clamp_progress(1.5, 0.0) == 1.0
  assert clamp_progress(-1.0, 0.2) == 0.2
  assert clamp_progress(math.nan, 0.3) == 0.3


@pytest.mark.anyio
async def test_progress_increases_are_persisted(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.3), progress(0.7)]))
  job = await harness.rendering_job()

  first = await harness.aggregator.poll(job)
  second = await harness.aggregator.poll(await harness.reload(job.job_id))

  assert (first.done, first.progress) == (False, 0.3)
  assert (second.done, second.progress) == (False, 0.7)
  assert (await harness.reload(job.job_id)).progress == 0.7


@pytest.mark.anyio
async def test_progress_regression_is_clamped_and_logged(harness_factory, caplog) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.5), progress(0.4)]))
  job = await harness.rendering_job()
  await harness.aggregator.poll(job)

  with caplog.at_level(logging.WARNING, logger="app.render.progress"):
    result = await harness.aggregator.poll(await harness.reload(job.job_id))

  assert result.progress == 0.5
  assert (await harness.reload(job.job_id)).progress == 0.5
  assert any("regression" in record.getMessage() for record in caplog.records)


@pytest.mark.anyio
async def test_done_report_moves_job_to_finalizing(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[finished(size=1234)]))
  job = await harness.rendering_job()

  result = await harness.aggregator.poll(job)

  assert result.done is True
  assert result.status == RenderStatus.FINALIZING
  assert result.output_locator == OUTPUT_LOCATOR
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FINALIZING
  assert stored.progress == 1.0
  assert stored.output_locator == OUTPUT_LOCATOR
  assert stored.output_size_bytes == 1234


@pytest.mark.anyio
async def test_done_without_artifact_is_a_worker_failure(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[FleetProgress(done=True, progress=1.0)]))
  job = await harness.rendering_job()

  result = await harness.aggregator.poll(job)

  assert result.status == RenderStatus.FAILED
  assert result.error == RenderErrorKind.WORKER_FATAL_ERROR


@pytest.mark.anyio
async def test_fatal_error_fails_the_job(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.3), FleetProgress(fatal_error="decode failure")]))
  job = await harness.rendering_job()
  await harness.aggregator.poll(job)

  result = await harness.aggregator.poll(await harness.reload(job.job_id))

  assert result.done is True
  assert result.error == RenderErrorKind.WORKER_FATAL_ERROR
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_message == "decode failure"
  assert stored.output_url is None


@pytest.mark.anyio
async def test_consecutive_poll_failures_become_a_poll_timeout(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[FleetTransientError("502")]))
  job = await harness.rendering_job()

  results = []
  for _ in range(3):
    results.append(await harness.aggregator.poll(await harness.reload(job.job_id)))

  assert [result.done for result in results] == [False, False, True]
  assert results[-1].error == RenderErrorKind.POLL_TIMEOUT
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.POLL_TIMEOUT
  assert harness.aggregator.consecutive_failures(job.job_id) == 0


@pytest.mark.anyio
async def test_successful_poll_resets_the_failure_count(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[FleetTransientError("502"), FleetTransientError("502"), progress(0.2), FleetTransientError("502"), progress(0.4)]))
  job = await harness.rendering_job()

  for _ in range(5):
    await harness.aggregator.poll(await harness.reload(job.job_id))

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.RENDERING
  assert stored.progress == 0.4
  assert harness.aggregator.consecutive_failures(job.job_id) == 0


@pytest.mark.anyio
async def test_job_timeout_fails_without_polling(harness_factory) -> None:
  harness = harness_factory()
  job = await harness.rendering_job()
  assert job.dispatched_at is not None
  late = job.dispatched_at + datetime.timedelta(seconds=harness.settings.job_timeout_seconds + 1)
  aggregator = ProgressAggregator(jobs_repo=harness.jobs_repo, fleet=harness.fleet, settings=harness.settings, clock=lambda: late)

  result = await aggregator.poll(job)

  assert result.error == RenderErrorKind.JOB_TIMEOUT
  assert harness.fleet.progress_calls == 0
  assert (await harness.reload(job.job_id)).status == RenderStatus.FAILED


@pytest.mark.anyio
async def test_cancel_request_is_observed_on_the_next_poll(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.4)]))
  job = await harness.rendering_job()
  job = await harness.jobs_repo.request_cancel(job.job_id)

  result = await harness.aggregator.poll(job)

  assert result.status == RenderStatus.CANCELLED
  assert harness.fleet.progress_calls == 0
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.CANCELLED
  assert stored.error_kind is None


@pytest.mark.anyio
async def test_stale_job_reports_stored_state(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[FleetProgress(fatal_error="boom")]))
  job = await harness.rendering_job()
  await harness.jobs_repo.transition(job.job_id, expected_status=RenderStatus.RENDERING, target_status=RenderStatus.CANCELLED)

  # The caller still holds the rendering snapshot.
  result = await harness.aggregator.poll(job)

  assert result.status == RenderStatus.CANCELLED
  assert result.done is True


class _CancelDuringPollFleet(ScriptedFleet):
  """Fleet whose progress call races with a user cancel."""

  jobs_repo = None

  async def progress(self, handle):
    await cancel_active_jobs(self.jobs_repo)
    return await super().progress(handle)


@pytest.mark.anyio
@pytest.mark.parametrize("report", [FleetProgress(progress=0.4, fatal_error="decode failure"), FleetTransientError("fleet overloaded")])
async def test_cancel_during_poll_wins_over_failure(harness_factory, report) -> None:
  fleet = _CancelDuringPollFleet(progress_reports=[report])
  harness = harness_factory(fleet=fleet, settings=make_settings(max_consecutive_poll_failures=1))
  fleet.jobs_repo = harness.jobs_repo
  job = await harness.rendering_job()

  result = await harness.aggregator.poll(job)

  assert result.done is True
  assert result.status == RenderStatus.CANCELLED
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.CANCELLED
  assert stored.error_kind is None
  assert await harness.settlement.settle(stored) is True
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert harness.sink.records == []
