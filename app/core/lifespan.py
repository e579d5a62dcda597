import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from app.core.database import dispose_engine
from app.core.logging import initialize_logging
from app.services.storage_client import GcsObjectStore
from app.storage.factory import build_render_components


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, build render collaborators and resume in-flight jobs."""
  from app.config import get_settings

  settings = get_settings()
  logger = logging.getLogger("app.core.lifespan")

  initialize_logging(settings)
  logger.info("Starting render engine environment=%s database=%s fleet=%s", settings.environment, _redact_dsn(settings.pg_dsn), settings.fleet_base_url or "<unset>")

  components = build_render_components(settings)
  app.state.render_components = components

  # Ensure the output bucket exists before finalization begins (emulator only).
  if isinstance(components.store, GcsObjectStore):
    try:
      await components.store.ensure_bucket()
      logger.info("Output bucket ensured: %s", components.store.bucket_name)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Failed to ensure output bucket at startup: %s", exc)

  if components.scheduler is not None:
    try:
      resumed = await components.scheduler.recover()
      logger.info("Render scheduler started; resumed=%d", resumed)
    except Exception:  # noqa: BLE001
      logger.error("Render recovery failed; unfinished jobs resume on next start.", exc_info=True)
  else:
    logger.info("Render scheduler disabled (REEL_SCHEDULER_ENABLED=false); jobs stay queued.")

  try:
    yield
  finally:
    await components.aclose()
    await dispose_engine()
    logger.info("Render engine stopped.")


def _redact_dsn(raw: str | None) -> str:
  """Redact credentials from a DSN while keeping host/db visible."""
  if not raw:
    return "<unset>"

  parsed = urlparse(raw)
  if not parsed.scheme:
    return "<invalid>"

  user = parsed.username or ""
  host = parsed.hostname or ""
  port = f":{parsed.port}" if parsed.port else ""
  netloc = f"{user}@{host}{port}" if user else f"{host}{port}"
  database = parsed.path.lstrip("/")
  path = f"/{database}" if database else ""
  return f"{parsed.scheme}://{netloc}{path}"
