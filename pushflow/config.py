"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from pushflow.utils.env import load_settings_env

load_settings_env()


@dataclass(frozen=True)
class Settings:
  """Typed settings for the pushflow service."""

  environment: str
  allowed_origins: tuple[str, ...]
  debug: bool
  log_max_bytes: int
  log_backup_count: int
  pg_dsn: str | None
  pg_connect_timeout: int
  firebase_project_id: str | None
  firebase_service_account_json_path: str | None
  push_enabled: bool
  workers_enabled: bool
  single_concurrency: int
  batch_concurrency: int
  retry_concurrency: int
  max_retry_attempts: int
  retry_delay_ms: int
  batch_retry_delay_ms: int
  retry_queue_delay_ms: int
  job_lease_seconds: int
  poll_interval_seconds: float
  sweep_interval_seconds: float


@dataclass(frozen=True)
class DatabaseSettings:
  """Typed settings for database connectivity."""

  debug: bool
  pg_dsn: str | None
  pg_connect_timeout: int


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ("http://localhost",)

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if not origins:
    raise ValueError("PUSHFLOW_ALLOWED_ORIGINS must include at least one origin.")

  if "*" in origins:
    raise ValueError("PUSHFLOW_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: str) -> float:
  value = float(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("PUSHFLOW_ENV", "development").lower()

  # Toggle SQL echo and verbose diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("PUSHFLOW_DEBUG"))

  log_max_bytes = _positive_int("PUSHFLOW_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("PUSHFLOW_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("PUSHFLOW_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Queue policy knobs; defaults mirror the documented single/batch/retry table.
  single_concurrency = _positive_int("PUSHFLOW_SINGLE_CONCURRENCY", "5")
  batch_concurrency = _positive_int("PUSHFLOW_BATCH_CONCURRENCY", "2")
  retry_concurrency = _positive_int("PUSHFLOW_RETRY_CONCURRENCY", "3")
  max_retry_attempts = _positive_int("PUSHFLOW_MAX_RETRY_ATTEMPTS", "3")
  retry_delay_ms = _positive_int("PUSHFLOW_RETRY_DELAY_MS", "5000")
  batch_retry_delay_ms = _positive_int("PUSHFLOW_BATCH_RETRY_DELAY_MS", "10000")
  retry_queue_delay_ms = _positive_int("PUSHFLOW_RETRY_QUEUE_DELAY_MS", "30000")

  job_lease_seconds = _positive_int("PUSHFLOW_JOB_LEASE_SECONDS", "300")
  poll_interval_seconds = _positive_float("PUSHFLOW_POLL_INTERVAL_SECONDS", "1.0")
  sweep_interval_seconds = _positive_float("PUSHFLOW_SWEEP_INTERVAL_SECONDS", "60")

  pg_connect_timeout = _positive_int("PUSHFLOW_PG_CONNECT_TIMEOUT", "5")

  return Settings(
    environment=environment,
    allowed_origins=_parse_origins(os.getenv("PUSHFLOW_ALLOWED_ORIGINS")),
    debug=debug,
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    pg_dsn=os.getenv("PUSHFLOW_PG_DSN") or os.getenv("DATABASE_URL"),
    pg_connect_timeout=pg_connect_timeout,
    firebase_project_id=_optional_str(os.getenv("PUSHFLOW_FIREBASE_PROJECT_ID")),
    firebase_service_account_json_path=_optional_str(os.getenv("PUSHFLOW_FIREBASE_SERVICE_ACCOUNT_JSON_PATH")),
    push_enabled=_parse_bool(os.getenv("PUSHFLOW_PUSH_ENABLED"), default=True),
    workers_enabled=_parse_bool(os.getenv("PUSHFLOW_WORKERS_ENABLED"), default=True),
    single_concurrency=single_concurrency,
    batch_concurrency=batch_concurrency,
    retry_concurrency=retry_concurrency,
    max_retry_attempts=max_retry_attempts,
    retry_delay_ms=retry_delay_ms,
    batch_retry_delay_ms=batch_retry_delay_ms,
    retry_queue_delay_ms=retry_queue_delay_ms,
    job_lease_seconds=job_lease_seconds,
    poll_interval_seconds=poll_interval_seconds,
    sweep_interval_seconds=sweep_interval_seconds,
  )


@lru_cache(maxsize=1)
def get_database_settings() -> DatabaseSettings:
  """Load database settings without requiring web-runtime configuration like CORS."""
  # Keep database configuration isolated so migrations and offline scripts don't require unrelated env vars.
  debug = _parse_bool(os.getenv("PUSHFLOW_DEBUG"))
  pg_connect_timeout = _positive_int("PUSHFLOW_PG_CONNECT_TIMEOUT", "5")

  # Support fallback to DATABASE_URL for container platforms that inject it.
  pg_dsn = os.getenv("PUSHFLOW_PG_DSN") or os.getenv("DATABASE_URL")

  return DatabaseSettings(debug=debug, pg_dsn=pg_dsn, pg_connect_timeout=pg_connect_timeout)
