from __future__ import annotations

import json

import httpx
import pytest

from app.render.dispatch import build_fleet_submission
from app.render.errors import FleetRejectedError, FleetTransientError
from app.services.worker_fleet import HttpWorkerFleet, TrackingHandle
from tests.render_fakes import make_settings


def _fleet(handler) -> HttpWorkerFleet:
  settings = make_settings(fleet_base_url="https://fleet.test/v1/", fleet_api_key="secret")
  client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
  return HttpWorkerFleet(settings, client=client)


@pytest.mark.anyio
async def test_submit_posts_partition_plan_with_bearer_token(harness_factory) -> None:
  seen: dict = {}

  def _handler(request: httpx.Request) -> httpx.Response:
    seen["url"] = str(request.url)
    seen["auth"] = request.headers.get("authorization")
    seen["body"] = json.loads(request.content)
    return httpx.Response(200, json={"tracking_id": "trk-1", "resource_locator": "fleet://renders/trk-1"})

  harness = harness_factory()
  job = await harness.admit()
  submission = build_fleet_submission(job, frames_per_partition=40)

  handle = await _fleet(_handler).submit(submission)

  assert handle == TrackingHandle(tracking_id="trk-1", resource_locator="fleet://renders/trk-1")
  assert seen["url"] == "https://fleet.test/v1/renders"
  assert seen["auth"] == "Bearer secret"
  assert seen["body"]["job_id"] == job.job_id
  assert seen["body"]["codec"] == "h264"
  assert len(seen["body"]["partitions"]) == 8
  assert "images" not in seen["body"]


@pytest.mark.anyio
@pytest.mark.parametrize(("status_code", "error"), [(429, FleetTransientError), (503, FleetTransientError), (400, FleetRejectedError), (404, FleetRejectedError)])
async def test_progress_status_mapping(status_code: int, error: type[Exception]) -> None:
  fleet = _fleet(lambda request: httpx.Response(status_code, text="nope"))
  with pytest.raises(error):
    await fleet.progress(TrackingHandle(tracking_id="trk-1", resource_locator="fleet://renders/trk-1"))


@pytest.mark.anyio
async def test_progress_decodes_report_and_rejects_garbage() -> None:
  report_body = {"done": True, "progress": 1.0, "output_locator": "https://cdn.fleet.test/out.mp4", "output_size_bytes": 42}
  fleet = _fleet(lambda request: httpx.Response(200, json=report_body))
  report = await fleet.progress(TrackingHandle(tracking_id="trk-1", resource_locator="fleet://renders/trk-1"))
  assert report.done is True
  assert report.output_size_bytes == 42

  broken = _fleet(lambda request: httpx.Response(200, content=b"<html>"))
  with pytest.raises(FleetTransientError):
    await broken.progress(TrackingHandle(tracking_id="trk-1", resource_locator="fleet://renders/trk-1"))


@pytest.mark.anyio
async def test_artifact_fetch_only_sends_token_to_the_fleet_host() -> None:
  seen: list[str | None] = []

  def _handler(request: httpx.Request) -> httpx.Response:
    seen.append(request.headers.get("authorization"))
    return httpx.Response(200, content=b"video")

  fleet = _fleet(_handler)
  assert await fleet.fetch_artifact("https://cdn.elsewhere.test/out.mp4?sig=abc") == b"video"
  assert await fleet.fetch_artifact("https://fleet.test/v1/artifacts/trk-1") == b"video"
  assert seen == [None, "Bearer secret"]


def test_fleet_requires_base_url() -> None:
  with pytest.raises(RuntimeError):
    HttpWorkerFleet(make_settings())
