"""Maintenance passes for queue jobs, delivery history and invalid tokens."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from pushflow.jobs.queues import QueueManager
from pushflow.storage.notifications_repo import NotificationStore

logger = logging.getLogger(__name__)

COMPLETED_JOB_TTL = timedelta(hours=24)
FAILED_JOB_TTL = timedelta(days=7)
HISTORY_TTL = timedelta(days=30)
INVALID_TOKEN_TTL = timedelta(days=7)


@dataclass(frozen=True)
class PurgeReport:
  history_deleted: int
  invalid_tokens_deleted: int


def _utcnow() -> datetime:
  return datetime.now(UTC)


class Maintenance:
  """Retention enforcement run on hourly and daily timers."""

  def __init__(self, *, store: NotificationStore, queues: QueueManager, clock: Callable[[], datetime] = _utcnow) -> None:
    self._store = store
    self._queues = queues
    self._clock = clock

  async def clean_queues(self) -> dict[str, int]:
    """Remove completed jobs older than 24h and failed jobs older than 7 days."""
    removed = await self._queues.clean(completed_ttl=COMPLETED_JOB_TTL, failed_ttl=FAILED_JOB_TTL)
    logger.info("Queue cleanup removed %s", removed)
    return removed

  async def purge_records(self) -> PurgeReport:
    """Delete history older than 30 days and invalid tokens older than 7 days.

    Invalid tokens are kept briefly so a reinstalled app can register the same
    token again once the entry expires.
    """
    now = self._clock()
    history_deleted = await self._store.purge_history(older_than=now - HISTORY_TTL)
    tokens_deleted = await self._store.purge_invalid_tokens(older_than=now - INVALID_TOKEN_TTL)
    logger.info("Purged %d history rows and %d invalid tokens", history_deleted, tokens_deleted)
    return PurgeReport(history_deleted=history_deleted, invalid_tokens_deleted=tokens_deleted)
