from __future__ import annotations

import pytest

from app.notifications.contracts import NotificationDraft, NotificationKind
from app.notifications.in_app_templates import render_in_app_template
from app.render.errors import RenderErrorKind
from app.render.models import RenderStatus
from app.render.notify import NotificationEmitter, build_notification
from app.render.reconcile import LedgerReconciler
from app.render.settlement import RenderSettlement
from app.storage.memory import InMemoryNotificationSink


class _BrokenSink(InMemoryNotificationSink):
  def __init__(self) -> None:
    super().__init__()
    self.fail = True

  async def emit(self, draft: NotificationDraft) -> bool:
    if self.fail:
      raise ConnectionError("notification store unavailable")
    return await super().emit(draft)


async def _terminal_job(harness, status: RenderStatus, **changes):
  job = await harness.admit()
  if status == RenderStatus.COMPLETE:
    await harness.dispatcher.dispatch(job)
    await harness.aggregator.poll(await harness.reload(job.job_id))
    await harness.finalizer.finalize(await harness.reload(job.job_id))
  else:
    await harness.jobs_repo.transition(job.job_id, expected_status=RenderStatus.QUEUED, target_status=status, **changes)
  return await harness.reload(job.job_id)


@pytest.mark.anyio
async def test_reconcile_commits_complete_jobs_once(harness_factory) -> None:
  harness = harness_factory()
  job = await _terminal_job(harness, RenderStatus.COMPLETE)
  reconciler = LedgerReconciler(harness.ledger)

  assert await reconciler.reconcile(job) is True
  assert await reconciler.reconcile(job) is False
  assert harness.reasons_for(job.job_id) == ["reserve", "commit"]


@pytest.mark.anyio
async def test_reconcile_refunds_failed_and_cancelled_jobs(harness_factory) -> None:
  harness = harness_factory()
  failed = await _terminal_job(harness, RenderStatus.FAILED, error_kind=RenderErrorKind.DISPATCH_FAILURE, error_message="no capacity")
  cancelled = await _terminal_job(harness, RenderStatus.CANCELLED)
  reconciler = LedgerReconciler(harness.ledger)

  assert await reconciler.reconcile(failed) is True
  assert await reconciler.reconcile(cancelled) is True
  assert harness.reasons_for(failed.job_id) == ["reserve", "refund"]
  assert harness.reasons_for(cancelled.job_id) == ["reserve", "refund"]
  assert await harness.ledger.balance("user-1") == 10


@pytest.mark.anyio
async def test_reconcile_rejects_non_terminal_jobs(harness_factory) -> None:
  harness = harness_factory()
  job = await harness.admit()
  with pytest.raises(ValueError):
    await LedgerReconciler(harness.ledger).reconcile(job)
  with pytest.raises(ValueError):
    await NotificationEmitter(harness.sink).notify(job)


@pytest.mark.anyio
async def test_emitter_writes_one_notification_per_job(harness_factory) -> None:
  harness = harness_factory()
  job = await _terminal_job(harness, RenderStatus.COMPLETE)
  emitter = NotificationEmitter(harness.sink)

  assert await emitter.notify(job) is True
  assert await emitter.notify(job) is False

  [record] = harness.sink.records
  assert record.kind == NotificationKind.RENDER_COMPLETE
  assert record.user_id == "user-1"
  assert record.data["output_url"] == job.output_url


@pytest.mark.anyio
async def test_cancelled_jobs_get_no_notification(harness_factory) -> None:
  harness = harness_factory()
  job = await _terminal_job(harness, RenderStatus.CANCELLED)

  assert build_notification(job) is None
  assert await NotificationEmitter(harness.sink).notify(job) is False
  assert harness.sink.records == []


@pytest.mark.anyio
async def test_failed_notification_carries_the_error(harness_factory) -> None:
  harness = harness_factory()
  job = await _terminal_job(harness, RenderStatus.FAILED, error_kind=RenderErrorKind.WORKER_FATAL_ERROR, error_message="decode failure")

  draft = build_notification(job)

  assert draft is not None
  assert draft.kind == NotificationKind.RENDER_FAILED
  assert draft.data == {"job_id": job.job_id, "error_message": "decode failure", "error_kind": "worker_fatal_error"}
  assert "decode failure" in draft.body


@pytest.mark.anyio
async def test_settlement_failure_is_repaired_by_a_second_run(harness_factory) -> None:
  harness = harness_factory()
  sink = _BrokenSink()
  settlement = RenderSettlement(jobs_repo=harness.jobs_repo, reconciler=LedgerReconciler(harness.ledger), emitter=NotificationEmitter(sink))
  job = await _terminal_job(harness, RenderStatus.FAILED, error_kind=RenderErrorKind.POLL_TIMEOUT, error_message="no progress")

  assert await settlement.settle(job) is False
  assert (await harness.reload(job.job_id)).settled_at is None

  sink.fail = False
  assert await settlement.settle(await harness.reload(job.job_id)) is True
  assert (await harness.reload(job.job_id)).settled_at is not None
  assert harness.reasons_for(job.job_id) == ["reserve", "refund"]
  assert len(sink.records) == 1


def test_in_app_template_requires_placeholders() -> None:
  title, body = render_in_app_template(template_id="render_complete_v1", data={"job_id": "job-1"})
  assert title == "Your video is ready"
  assert "job-1" in body
  with pytest.raises(ValueError, match="error_message"):
    render_in_app_template(template_id="render_failed_v1", data={"job_id": "job-1"})
  with pytest.raises(ValueError, match="Unknown"):
    render_in_app_template(template_id="nope", data={})
