"""Client for the partitioned serverless render fleet."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
import msgspec

from app.config import Settings
from app.render.errors import FleetRejectedError, FleetTransientError

logger = logging.getLogger(__name__)


class FleetPartition(msgspec.Struct, frozen=True):
  """Inclusive frame range assigned to one fleet worker."""

  index: int
  start_frame: int
  end_frame: int


class FleetSubmission(msgspec.Struct, omit_defaults=True):
  """Body of POST {base}/renders; the same value is resent on retry."""

  job_id: str
  spec: dict[str, Any]
  source_asset_url: str
  codec: str
  frames_per_partition: int
  partitions: list[FleetPartition]
  images: dict[str, str] | None = None
  audio_url: str | None = None


class TrackingHandle(msgspec.Struct, frozen=True):
  """Fleet-issued reference used to query progress."""

  tracking_id: str
  resource_locator: str


class FleetProgress(msgspec.Struct):
  """One progress report for a tracked render."""

  done: bool = False
  progress: float = 0.0
  output_locator: str | None = None
  output_size_bytes: int | None = None
  fatal_error: str | None = None


class WorkerFleet(Protocol):
  """Contract for submitting renders to the fleet and querying them."""

  async def submit(self, submission: FleetSubmission) -> TrackingHandle:
    """Submit one job's full partition plan and return its tracking handle."""
    ...

  async def progress(self, handle: TrackingHandle) -> FleetProgress:
    """Return the aggregate progress report for a tracked render."""
    ...

  async def fetch_artifact(self, output_locator: str) -> bytes:
    """Download the stitched artifact bytes."""
    ...


def _raise_for_fleet_status(response: httpx.Response, *, operation: str) -> None:
  """Map fleet HTTP status codes onto transient vs permanent errors."""
  if response.status_code < 400:
    return
  detail = response.text[:300]
  if response.status_code == 429 or response.status_code >= 500:
    raise FleetTransientError(f"{operation} returned {response.status_code}: {detail}")
  raise FleetRejectedError(f"{operation} returned {response.status_code}: {detail}")


class HttpWorkerFleet:
  """Call the fleet's HTTP API with a shared httpx client."""

  def __init__(self, settings: Settings, *, client: httpx.AsyncClient | None = None) -> None:
    if not settings.fleet_base_url:
      raise RuntimeError("Fleet base URL not configured (REEL_FLEET_BASE_URL).")
    self._base_url = settings.fleet_base_url.rstrip("/")
    self._api_key = settings.fleet_api_key
    self._timeout = settings.fleet_timeout_seconds
    # Never trust environment proxy variables for fleet traffic.
    self._client = client or httpx.AsyncClient(timeout=self._timeout, trust_env=False)

  def _headers(self) -> dict[str, str]:
    headers = {"content-type": "application/json"}
    if self._api_key:
      headers["authorization"] = f"Bearer {self._api_key}"
    return headers

  async def submit(self, submission: FleetSubmission) -> TrackingHandle:
    url = f"{self._base_url}/renders"
    logger.info("Submitting render to fleet job=%s partitions=%d", submission.job_id, len(submission.partitions))
    response = await self._client.post(url, content=msgspec.json.encode(submission), headers=self._headers(), timeout=self._timeout)
    _raise_for_fleet_status(response, operation="fleet submit")
    try:
      return msgspec.json.decode(response.content, type=TrackingHandle)
    except msgspec.DecodeError as exc:
      raise FleetTransientError(f"fleet submit returned an unreadable body: {exc}") from exc

  async def progress(self, handle: TrackingHandle) -> FleetProgress:
    url = f"{self._base_url}/renders/progress"
    response = await self._client.post(url, content=msgspec.json.encode(handle), headers=self._headers(), timeout=self._timeout)
    _raise_for_fleet_status(response, operation="fleet progress")
    try:
      return msgspec.json.decode(response.content, type=FleetProgress)
    except msgspec.DecodeError as exc:
      raise FleetTransientError(f"fleet progress returned an unreadable body: {exc}") from exc

  async def fetch_artifact(self, output_locator: str) -> bytes:
    # Output locators are pre-signed; the bearer token is only sent to the fleet host.
    headers = self._headers() if output_locator.startswith(self._base_url) else {}
    response = await self._client.get(output_locator, headers=headers, timeout=self._timeout)
    _raise_for_fleet_status(response, operation="artifact fetch")
    return response.content

  async def aclose(self) -> None:
    await self._client.aclose()
