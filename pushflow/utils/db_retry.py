"""Database failure classification and translation of connectivity errors."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError

from pushflow.notifications.contracts import InfrastructureUnavailableError

logger = logging.getLogger(__name__)

_CONNECTIVITY_PATTERNS = ("connection", "timeout", "reset", "network", "broken pipe", "lost connection", "refused")


class DBFailureClassification:
  """Classification result for a database failure."""

  def __init__(self, *, retryable: bool, reason: str, sqlstate: str | None, category: str) -> None:
    self.retryable = retryable
    self.reason = reason
    self.sqlstate = sqlstate
    self.category = category

  @property
  def unavailable(self) -> bool:
    return self.category == "connectivity_error"


def _extract_sqlstate(exc: BaseException) -> str | None:
  """Extract Postgres SQLSTATE from SQLAlchemy exception."""
  if isinstance(exc, DBAPIError) and exc.orig is not None:
    # asyncpg exposes sqlstate; psycopg exposes pgcode.
    for attr in ("sqlstate", "pgcode"):
      value = getattr(exc.orig, attr, None)
      if value:
        return str(value)
  return None


def classify_db_failure(exc: BaseException) -> DBFailureClassification:
  """
  Classify a database failure.

  Connectivity problems (dropped or refused connections, SQLSTATE class 08,
  admin shutdown 57P01, invalidated pool connections) are reported with the
  `connectivity_error` category so callers can treat the store as unavailable.
  """
  sqlstate = _extract_sqlstate(exc)

  if sqlstate == "40001":
    return DBFailureClassification(retryable=True, reason="Serialization failure - transaction conflict", sqlstate=sqlstate, category="serialization_conflict")

  if sqlstate == "40P01":
    return DBFailureClassification(retryable=True, reason="Deadlock detected", sqlstate=sqlstate, category="deadlock")

  if sqlstate and (sqlstate.startswith("08") or sqlstate in {"57P01", "57P02", "57P03"}):
    return DBFailureClassification(retryable=True, reason="Database connection failure", sqlstate=sqlstate, category="connectivity_error")

  if (sqlstate and sqlstate.startswith("23")) or isinstance(exc, IntegrityError):
    return DBFailureClassification(retryable=False, reason="Integrity constraint violation", sqlstate=sqlstate, category="integrity_error")

  if sqlstate and sqlstate.startswith("42"):
    return DBFailureClassification(retryable=False, reason="Schema/SQL error (undefined table/column, syntax error)", sqlstate=sqlstate, category="schema_error")

  if isinstance(exc, DBAPIError) and exc.connection_invalidated:
    return DBFailureClassification(retryable=True, reason="Pooled connection invalidated", sqlstate=sqlstate, category="connectivity_error")

  if isinstance(exc, (OperationalError, InterfaceError, ConnectionError, OSError, TimeoutError)):
    error_msg = str(exc).lower()
    if isinstance(exc, (ConnectionError, OSError, TimeoutError, InterfaceError)) or any(pattern in error_msg for pattern in _CONNECTIVITY_PATTERNS):
      return DBFailureClassification(retryable=True, reason="Transient connection/network error", sqlstate=sqlstate, category="connectivity_error")
    return DBFailureClassification(retryable=False, reason="Operational error (unknown cause)", sqlstate=sqlstate, category="operational_error_unknown")

  return DBFailureClassification(retryable=False, reason=f"Unknown error type: {type(exc).__name__}", sqlstate=sqlstate, category="unknown_error")


@asynccontextmanager
async def translate_db_errors(operation_name: str) -> AsyncIterator[None]:
  """Re-raise connectivity failures as InfrastructureUnavailableError; other errors propagate untouched."""
  try:
    yield
  except (DBAPIError, ConnectionError, OSError, TimeoutError) as exc:
    classification = classify_db_failure(exc)
    if not classification.unavailable:
      raise
    logger.warning("Database unavailable: operation=%s, sqlstate=%s, reason=%s", operation_name, classification.sqlstate or "none", classification.reason)
    raise InfrastructureUnavailableError(f"{operation_name}: {classification.reason}") from exc
