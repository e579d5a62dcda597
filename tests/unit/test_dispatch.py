from __future__ import annotations

import pytest

from app.render.dispatch import classify_submit_failure
from app.render.errors import FleetRejectedError, FleetTransientError, RenderErrorKind
from app.render.models import RenderStatus
from app.services.worker_fleet import TrackingHandle
from tests.render_fakes import ScriptedFleet, cancel_active_jobs

_HANDLE = TrackingHandle(tracking_id="trk-9", resource_locator="fleet://renders/trk-9")


@pytest.mark.anyio
async def test_dispatch_moves_job_to_rendering(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(submit_results=[_HANDLE]))
  job = await harness.admit()

  handle = await harness.dispatcher.dispatch(job)

  assert handle == _HANDLE
  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.RENDERING
  assert stored.tracking_id == "trk-9"
  assert stored.resource_locator == "fleet://renders/trk-9"
  assert stored.retry_count == 0
  assert stored.dispatched_at is not None
  submission = harness.fleet.submissions[0]
  assert submission.codec == "h264"
  assert len(submission.partitions) == 8
  assert submission.partitions[-1].end_frame == 299


@pytest.mark.anyio
async def test_transient_rejection_is_retried_with_identical_payload(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(submit_results=[FleetTransientError("503"), _HANDLE]))
  job = await harness.admit()

  await harness.dispatcher.dispatch(job)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.RENDERING
  assert stored.retry_count == 1
  assert len(harness.fleet.submissions) == 2
  assert harness.fleet.submissions[0] == harness.fleet.submissions[1]


@pytest.mark.anyio
async def test_dispatch_failure_after_budget_fails_and_refunds(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(submit_results=[FleetTransientError("503"), FleetTransientError("503")]))
  job = await harness.admit()

  assert await harness.dispatcher.dispatch(job) is None

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.DISPATCH_FAILURE
  assert stored.retry_count == 1
  assert len(harness.fleet.submissions) == 2
  assert harness.fleet.progress_calls == 0

  assert await harness.settlement.settle(stored) is True
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert [record.kind.value for record in harness.sink.records] == ["render_failed"]


@pytest.mark.anyio
@pytest.mark.parametrize("error", [FleetRejectedError("400 bad spec"), RuntimeError("fleet client exploded")])
async def test_rejections_are_retried_within_budget_then_fail(harness_factory, error: Exception) -> None:
  harness = harness_factory(fleet=ScriptedFleet(submit_results=[error, error]))
  job = await harness.admit()

  assert await harness.dispatcher.dispatch(job) is None

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.DISPATCH_FAILURE
  assert stored.retry_count == 1
  assert len(harness.fleet.submissions) == 2


@pytest.mark.anyio
async def test_rejected_first_attempt_can_still_dispatch(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(submit_results=[FleetRejectedError("400 bad spec"), _HANDLE]))
  job = await harness.admit()

  assert await harness.dispatcher.dispatch(job) == _HANDLE

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.RENDERING
  assert stored.retry_count == 1


def test_submit_failures_keep_their_category_but_stay_retryable() -> None:
  classification = classify_submit_failure(FleetRejectedError("400"))
  assert classification.retryable is True
  assert classification.category == "fleet_rejected"


class _CancelDuringSubmitFleet(ScriptedFleet):
  """Fleet that fails every submit while a user cancel lands mid-call."""

  jobs_repo = None

  async def submit(self, submission):
    self.submissions.append(submission)
    await cancel_active_jobs(self.jobs_repo)
    raise FleetTransientError("503")


@pytest.mark.anyio
async def test_cancel_during_dispatch_retries_wins_over_failure(harness_factory) -> None:
  fleet = _CancelDuringSubmitFleet()
  harness = harness_factory(fleet=fleet)
  fleet.jobs_repo = harness.jobs_repo
  job = await harness.admit()

  assert await harness.dispatcher.dispatch(job) is None

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.CANCELLED
  assert stored.error_kind is None
  assert len(fleet.submissions) == 2
  assert await harness.settlement.settle(stored) is True
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert harness.sink.records == []


@pytest.mark.anyio
async def test_cancel_before_dispatch_never_contacts_the_fleet(harness_factory) -> None:
  harness = harness_factory()
  job = await harness.admit()
  job = await harness.jobs_repo.request_cancel(job.job_id)

  assert await harness.dispatcher.dispatch(job) is None

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.CANCELLED
  assert stored.error_kind is None
  assert harness.fleet.submissions == []


@pytest.mark.anyio
async def test_only_queued_jobs_can_be_dispatched(harness_factory) -> None:
  harness = harness_factory()
  job = await harness.rendering_job()
  with pytest.raises(ValueError):
    await harness.dispatcher.dispatch(job)
