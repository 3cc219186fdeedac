import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlparse

from fastapi import FastAPI

from pushflow.config import get_settings
from pushflow.core.database import dispose_engine
from pushflow.core.logging import initialize_logging
from pushflow.notifications.contracts import InfrastructureUnavailableError
from pushflow.services.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Configure logging, build the runtime and run the workers for the app's lifetime."""
  settings = get_settings()
  logger = logging.getLogger("pushflow.core.lifespan")
  initialize_logging(settings)

  runtime = None
  if not settings.pg_dsn:
    logger.error("PUSHFLOW_PG_DSN is not set; notification endpoints will return 503.")
  else:
    logger.info("Building notification runtime; database=%s", _redact_dsn(settings.pg_dsn))
    runtime = build_runtime(settings)
    app.state.runtime = runtime

    if settings.workers_enabled:
      try:
        await runtime.workers.start()
      except InfrastructureUnavailableError:
        logger.error("Queue store unreachable; workers not started.", exc_info=True)
    else:
      logger.info("Workers disabled (PUSHFLOW_WORKERS_ENABLED=false); running API only.")

  try:
    yield
  finally:
    if runtime is not None:
      await runtime.workers.stop()
    await dispose_engine()
    logger.info("Shutdown complete.")


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
