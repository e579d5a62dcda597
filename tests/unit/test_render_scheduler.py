from __future__ import annotations

import pytest

from app.notifications.contracts import NotificationKind
from app.render.errors import FleetTransientError, RenderErrorKind
from app.render.models import RenderJobRecord, RenderStatus, utc_now
from app.services.worker_fleet import FleetProgress
from tests.render_fakes import OWNER_ID, FlakyObjectStore, RecordingJobsRepository, ScriptedFleet, finished, make_settings, progress, sample_payload


class _CrashingStore(FlakyObjectStore):
  def public_url(self, path: str) -> str:
    raise RuntimeError("url signer misconfigured")


@pytest.mark.anyio
async def test_happy_path_completes_commits_and_notifies_once(harness_factory) -> None:
  jobs_repo = RecordingJobsRepository()
  fleet = ScriptedFleet(progress_reports=[progress(0.3), progress(0.7), finished()])
  harness = harness_factory(fleet=fleet, jobs_repo=jobs_repo, settings=make_settings(credits_per_block=10), auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.COMPLETE
  assert stored.progress == 1.0
  assert stored.output_url == f"memory://renders/renders/{job.job_id}/output.mp4"
  assert stored.settled_at is not None
  assert fleet.progress_calls == 3
  assert jobs_repo.progress_writes[:2] == [0.3, 0.7]
  assert jobs_repo.progress_writes == sorted(jobs_repo.progress_writes)
  assert harness.reasons_for(job.job_id) == ["reserve", "commit"]
  assert await harness.ledger.balance(OWNER_ID) == 0
  assert [record.kind for record in harness.sink.records] == [NotificationKind.RENDER_COMPLETE]


@pytest.mark.anyio
async def test_fatal_error_on_second_poll_refunds_and_notifies(harness_factory) -> None:
  fleet = ScriptedFleet(progress_reports=[progress(0.3), FleetProgress(fatal_error="decode failure")])
  harness = harness_factory(fleet=fleet, settings=make_settings(credits_per_block=10), auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.WORKER_FATAL_ERROR
  assert stored.output_url is None
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert await harness.ledger.balance(OWNER_ID) == 10
  [record] = harness.sink.records
  assert record.kind == NotificationKind.RENDER_FAILED
  assert record.data["error_message"] == "decode failure"


@pytest.mark.anyio
async def test_dispatch_failure_never_polls(harness_factory) -> None:
  fleet = ScriptedFleet(submit_results=[FleetTransientError("503")])
  harness = harness_factory(fleet=fleet, auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.DISPATCH_FAILURE
  assert len(fleet.submissions) == 2
  assert fleet.progress_calls == 0
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]


@pytest.mark.anyio
async def test_storage_retry_completes_with_single_commit(harness_factory) -> None:
  store = FlakyObjectStore(failures=1)
  harness = harness_factory(store=store, auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.COMPLETE
  assert store.put_count == 2
  assert harness.reasons_for(job.job_id) == ["reserve", "commit"]
  assert len(harness.sink.records) == 1


@pytest.mark.anyio
async def test_cancel_while_rendering_refunds_without_notification(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.2)]), settings=make_settings(poll_interval_seconds=5), auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.wait_for_status(job.job_id, RenderStatus.RENDERING)
  await harness.service.cancel(job.job_id, OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.CANCELLED
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert harness.sink.records == []


@pytest.mark.anyio
async def test_loop_crash_fails_the_job_instead_of_stranding_it(harness_factory) -> None:
  harness = harness_factory(store=_CrashingStore(failures=0), auto_schedule=True)

  job = await harness.service.submit(sample_payload(), OWNER_ID)
  await harness.scheduler.wait_for(job.job_id)

  stored = await harness.reload(job.job_id)
  assert stored.status == RenderStatus.FAILED
  assert stored.error_kind == RenderErrorKind.POLL_TIMEOUT
  assert stored.settled_at is not None
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]


@pytest.mark.anyio
async def test_recover_settles_and_resumes(harness_factory) -> None:
  harness = harness_factory()
  now = utc_now()
  await harness.ledger.reserve(user_id=OWNER_ID, job_id="job-orphan", amount=2)
  orphan = RenderJobRecord(
    job_id="job-orphan",
    owner_id=OWNER_ID,
    spec={"output_kind": "mp4"},
    status=RenderStatus.FAILED,
    cost=2,
    created_at=now,
    updated_at=now,
    error_kind=RenderErrorKind.POLL_TIMEOUT,
    error_message="Render tracking stopped unexpectedly.",
  )
  await harness.jobs_repo.create_job(orphan)
  queued = await harness.admit()

  resumed = await harness.scheduler.recover()
  await harness.scheduler.wait_for(queued.job_id)

  assert resumed == 1
  assert harness.reasons_for("job-orphan") == ["reserve", "refund"]
  assert (await harness.reload("job-orphan")).settled_at is not None
  assert (await harness.reload(queued.job_id)).status == RenderStatus.COMPLETE
  assert await harness.jobs_repo.list_unsettled() == []


@pytest.mark.anyio
async def test_submit_twice_tracks_one_task(harness_factory) -> None:
  harness = harness_factory(fleet=ScriptedFleet(progress_reports=[progress(0.1)]), settings=make_settings(poll_interval_seconds=5))
  job = await harness.admit()

  harness.scheduler.submit(job.job_id)
  harness.scheduler.submit(job.job_id)

  assert harness.scheduler.active_job_ids == [job.job_id]
  await harness.scheduler.shutdown()
  assert harness.scheduler.active_job_ids == []
  # Shutdown leaves state for recovery to pick up.
  assert not (await harness.reload(job.job_id)).is_terminal
