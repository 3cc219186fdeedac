"""Sweep that promotes due pending notifications into the delivery queues."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from pushflow.jobs.queues import QueueManager
from pushflow.notifications.contracts import Priority
from pushflow.storage.notifications_repo import NotificationStore, PendingRecord

logger = logging.getLogger(__name__)

SWEEP_LIMIT = 100
SWEEP_BATCH_SIZE = 50


@dataclass(frozen=True)
class SweepReport:
  processed: int = 0
  high_priority: int = 0
  normal_priority: int = 0

  def as_dict(self) -> dict[str, int]:
    return {"processed": self.processed, "high_priority": self.high_priority, "normal_priority": self.normal_priority}


def _utcnow() -> datetime:
  return datetime.now(UTC)


class Scheduler:
  """Claims due pending rows and feeds them into the single and batch queues."""

  def __init__(self, *, store: NotificationStore, queues: QueueManager, limit: int = SWEEP_LIMIT, batch_size: int = SWEEP_BATCH_SIZE, clock: Callable[[], datetime] = _utcnow) -> None:
    self._store = store
    self._queues = queues
    self._limit = limit
    self._batch_size = batch_size
    self._clock = clock

  async def sweep(self) -> SweepReport:
    """Promote up to `limit` due rows; claimed rows go back to pending if enqueueing fails."""
    due = await self._store.claim_due(now=self._clock(), limit=self._limit)
    if not due:
      return SweepReport()

    # High priority rows travel as single jobs so they skip the batch queue.
    high = [record for record in due if record.priority == Priority.HIGH.value]
    normal = [record for record in due if record.priority != Priority.HIGH.value]

    enqueued_high = await self._enqueue_high(high)
    enqueued_normal = await self._enqueue_normal(normal)

    report = SweepReport(processed=enqueued_high + enqueued_normal, high_priority=enqueued_high, normal_priority=enqueued_normal)
    logger.info("Scheduled sweep promoted %d notifications (%d high, %d normal)", report.processed, report.high_priority, report.normal_priority)
    return report

  async def run_now(self) -> SweepReport:
    return await self.sweep()

  async def _enqueue_high(self, records: list[PendingRecord]) -> int:
    enqueued = 0
    for index, record in enumerate(records):
      try:
        await self._queues.enqueue_single(record.to_payload(), priority=Priority.HIGH.value)
      # Rows not yet enqueued go back to pending for the next sweep.
      except Exception:
        logger.error("Sweep failed to enqueue high-priority notifications; releasing %d rows", len(records) - index, exc_info=True)
        await self._store.release_to_pending([item.id for item in records[index:]])
        break
      enqueued += 1
    return enqueued

  async def _enqueue_normal(self, records: list[PendingRecord]) -> int:
    enqueued = 0
    for start in range(0, len(records), self._batch_size):
      chunk = records[start : start + self._batch_size]
      try:
        await self._queues.enqueue_batch([record.to_payload() for record in chunk])
      except Exception:
        logger.error("Sweep failed to enqueue a batch; releasing %d rows", len(records) - start, exc_info=True)
        await self._store.release_to_pending([item.id for item in records[start:]])
        break
      enqueued += len(chunk)
    return enqueued
