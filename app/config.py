"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from app.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)


@dataclass(frozen=True)
class Settings:
  """Typed settings for the render engine service."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  pg_dsn: str | None
  pg_connect_timeout: int
  output_bucket: str
  public_base_url: str | None
  gcs_storage_host: str | None
  gcp_project_id: str | None
  fleet_base_url: str | None
  fleet_api_key: str | None
  fleet_timeout_seconds: float
  frames_per_partition: int
  dispatch_retry_budget: int
  poll_interval_seconds: float
  max_consecutive_poll_failures: int
  storage_retry_attempts: int
  job_timeout_seconds: int
  credits_per_block: int
  credit_block_seconds: int
  max_duration_seconds: int
  dev_user_id: str | None
  scheduler_enabled: bool


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost:3000",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("REEL_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _non_negative_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value < 0:
    raise ValueError(f"{name} must be zero or a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("REEL_ENV", "development").lower()
  debug = _parse_bool(os.getenv("REEL_DEBUG"))

  # Render orchestration knobs; chunk size is fixed per deployment, not per request.
  frames_per_partition = _positive_int("REEL_FRAMES_PER_PARTITION", "40")
  dispatch_retry_budget = _non_negative_int("REEL_DISPATCH_RETRY_BUDGET", "1")
  poll_interval_seconds = _positive_float("REEL_POLL_INTERVAL_SECONDS", "3")
  max_consecutive_poll_failures = _positive_int("REEL_MAX_CONSECUTIVE_POLL_FAILURES", "5")
  storage_retry_attempts = _positive_int("REEL_STORAGE_RETRY_ATTEMPTS", "3")
  job_timeout_seconds = _positive_int("REEL_JOB_TIMEOUT_SECONDS", "900")
  fleet_timeout_seconds = _positive_float("REEL_FLEET_TIMEOUT_SECONDS", "20")

  # Pricing inputs for the credit cost of one render.
  credits_per_block = _positive_int("REEL_CREDITS_PER_BLOCK", "2")
  credit_block_seconds = _positive_int("REEL_CREDIT_BLOCK_SECONDS", "10")
  max_duration_seconds = _positive_int("REEL_MAX_DURATION_SECONDS", "60")

  # Only honor the development identity outside production.
  dev_user_id = _optional_str(os.getenv("REEL_DEV_USER_ID"))
  if dev_user_id and environment in {"production", "prod"}:
    raise ValueError("REEL_DEV_USER_ID must not be set in production.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("REEL_ALLOWED_ORIGINS")),
    log_dir=(os.getenv("REEL_LOG_DIR") or "logs").strip(),
    log_max_bytes=_positive_int("REEL_LOG_MAX_BYTES", "5242880"),
    log_backup_count=_non_negative_int("REEL_LOG_BACKUP_COUNT", "10"),
    log_http_4xx=_parse_bool(os.getenv("REEL_LOG_HTTP_4XX")),
    pg_dsn=_optional_str(os.getenv("REEL_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL")),
    pg_connect_timeout=_positive_int("REEL_PG_CONNECT_TIMEOUT", "5"),
    output_bucket=os.getenv("REEL_OUTPUT_BUCKET", "reel-renders"),
    public_base_url=_optional_str(os.getenv("REEL_PUBLIC_BASE_URL")),
    gcs_storage_host=_optional_str(os.getenv("GCS_STORAGE_HOST")),
    gcp_project_id=_optional_str(os.getenv("GCP_PROJECT_ID")),
    fleet_base_url=_optional_str(os.getenv("REEL_FLEET_BASE_URL")),
    fleet_api_key=_optional_str(os.getenv("REEL_FLEET_API_KEY")),
    fleet_timeout_seconds=fleet_timeout_seconds,
    frames_per_partition=frames_per_partition,
    dispatch_retry_budget=dispatch_retry_budget,
    poll_interval_seconds=poll_interval_seconds,
    max_consecutive_poll_failures=max_consecutive_poll_failures,
    storage_retry_attempts=storage_retry_attempts,
    job_timeout_seconds=job_timeout_seconds,
    credits_per_block=credits_per_block,
    credit_block_seconds=credit_block_seconds,
    max_duration_seconds=max_duration_seconds,
    dev_user_id=dev_user_id,
    scheduler_enabled=_parse_bool(os.getenv("REEL_SCHEDULER_ENABLED"), default=True),
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration."""
  debug = _parse_bool(os.getenv("REEL_DEBUG"))
  pg_connect_timeout = _positive_int("REEL_PG_CONNECT_TIMEOUT", "5")
  pg_dsn = _optional_str(os.getenv("REEL_PG_DSN")) or _optional_str(os.getenv("DATABASE_URL"))
  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value
