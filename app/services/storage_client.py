"""Object storage for finished render artifacts."""

from __future__ import annotations

import os
from typing import Protocol
from urllib.parse import quote, urlparse, urlunparse

from google.api_core.exceptions import GoogleAPIError
from google.auth.credentials import AnonymousCredentials
from google.cloud import storage
from starlette.concurrency import run_in_threadpool

from app.config import Settings
from app.render.errors import StorageCommitError


class ObjectStore(Protocol):
  """Durable artifact storage with overwrite-on-same-path semantics."""

  async def put(self, path: str, data: bytes, content_type: str) -> None:
    """Write bytes at path, replacing any existing object."""
    ...

  def public_url(self, path: str) -> str:
    """Resolve the stable public URL for a stored object."""
    ...


class GcsObjectStore:
  """Thin wrapper over GCS and emulator access for render outputs."""

  def __init__(self, settings: Settings) -> None:
    self._bucket_name = settings.output_bucket
    self._storage_host = settings.gcs_storage_host
    self._public_base_url = settings.public_base_url.rstrip("/") if settings.public_base_url else None
    self._emulator_endpoint: str | None = None
    # Ensure emulator endpoint is visible to the SDK in local development.
    if self._storage_host:
      self._emulator_endpoint = _normalize_emulator_endpoint(self._storage_host)
      os.environ["GCS_STORAGE_EMULATOR_HOST"] = self._emulator_endpoint
      self._client = storage.Client(project=settings.gcp_project_id or "local-dev", credentials=AnonymousCredentials(), client_options={"api_endpoint": self._emulator_endpoint})
    else:
      self._client = storage.Client(project=settings.gcp_project_id)

  @property
  def bucket_name(self) -> str:
    return self._bucket_name

  async def ensure_bucket(self) -> None:
    """Create the output bucket when missing in emulator mode."""
    if not self._storage_host:
      return
    bucket = self._client.bucket(self._bucket_name)

    def _create_if_missing() -> None:
      if not bucket.exists(client=self._client):
        self._client.create_bucket(bucket)

    await run_in_threadpool(_create_if_missing)

  async def put(self, path: str, data: bytes, content_type: str) -> None:
    bucket = self._client.bucket(self._bucket_name)
    blob = bucket.blob(path)
    blob.cache_control = "public, max-age=86400"
    try:
      await run_in_threadpool(blob.upload_from_string, data, content_type)
    except (GoogleAPIError, OSError) as exc:
      raise StorageCommitError(f"Upload to gs://{self._bucket_name}/{path} failed: {exc}") from exc

  def public_url(self, path: str) -> str:
    if self._public_base_url:
      return f"{self._public_base_url}/{path}"
    if self._emulator_endpoint:
      return f"{self._emulator_endpoint}/storage/v1/b/{self._bucket_name}/o/{quote(path, safe='')}?alt=media"
    return f"https://storage.googleapis.com/{self._bucket_name}/{path}"


def build_object_store(settings: Settings) -> GcsObjectStore:
  """Create an object store instance with environment-aware credentials."""
  return GcsObjectStore(settings)


def _normalize_emulator_endpoint(raw_endpoint: str) -> str:
  """Normalize emulator endpoint so the SDK receives scheme+host+port only."""
  parsed = urlparse(raw_endpoint)
  if not parsed.scheme or not parsed.netloc:
    return raw_endpoint.rstrip("/")
  return urlunparse((parsed.scheme, parsed.netloc, "", "", "", "")).rstrip("/")
