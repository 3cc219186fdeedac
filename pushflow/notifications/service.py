"""Notification service facade used by the HTTP layer."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pushflow.jobs.queues import QueueManager
from pushflow.jobs.scheduler import Scheduler, SweepReport
from pushflow.notifications.contracts import InvalidDeviceTokenError, PendingStatus
from pushflow.notifications.gateway import DeliveryGateway, TokenValidation
from pushflow.services.maintenance import Maintenance
from pushflow.storage.notifications_repo import HistoryFilters, HistoryRecord, NewNotification, NotificationStore, PendingRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
  id: str
  status: str


@dataclass(frozen=True)
class BatchSubmitResult:
  accepted: int
  rejected_tokens: list[str]
  ids: list[str]


def _utcnow() -> datetime:
  return datetime.now(UTC)


class NotificationService:
  """Submit, inspect and administer notifications."""

  def __init__(self, *, store: NotificationStore, queues: QueueManager, gateway: DeliveryGateway, scheduler: Scheduler, maintenance: Maintenance, clock: Callable[[], datetime] = _utcnow) -> None:
    self._store = store
    self._queues = queues
    self._gateway = gateway
    self._scheduler = scheduler
    self._maintenance = maintenance
    self._clock = clock

  def _is_immediate(self, item: NewNotification) -> bool:
    return item.scheduled_at is None or item.scheduled_at <= self._clock()

  async def submit(self, item: NewNotification) -> SubmitResult:
    """Persist one notification; immediate ones are enqueued, future ones wait for the sweep."""
    if await self._store.find_invalid_tokens([item.device_token]):
      raise InvalidDeviceTokenError("Device token is marked invalid")

    if not self._is_immediate(item):
      [record] = await self._store.insert_pending([item], status=PendingStatus.PENDING)
      logger.info("Notification %s scheduled for %s", record.id, record.scheduled_at.isoformat())
      return SubmitResult(id=record.id, status="scheduled")

    [record] = await self._store.insert_pending([item], status=PendingStatus.PROCESSING)
    try:
      await self._queues.enqueue_single(record.to_payload(), priority=record.priority)
    except Exception:
      # The sweep picks the row up once it is pending again.
      logger.error("Enqueue failed for notification %s; handing it to the sweep", record.id, exc_info=True)
      await self._store.release_to_pending([record.id])
    return SubmitResult(id=record.id, status="queued")

  async def submit_batch(self, items: Sequence[NewNotification]) -> BatchSubmitResult:
    """Persist many notifications, skipping invalid tokens; immediate items go out as batch jobs."""
    invalid = await self._store.find_invalid_tokens([item.device_token for item in items])
    accepted = [item for item in items if item.device_token not in invalid]
    immediate = [item for item in accepted if self._is_immediate(item)]
    scheduled = [item for item in accepted if not self._is_immediate(item)]

    queued_records = await self._store.insert_pending(immediate, status=PendingStatus.PROCESSING)
    scheduled_records = await self._store.insert_pending(scheduled, status=PendingStatus.PENDING)

    if queued_records:
      try:
        await self._queues.enqueue_batch([record.to_payload() for record in queued_records])
      except Exception:
        logger.error("Batch enqueue failed; handing %d notifications to the sweep", len(queued_records), exc_info=True)
        await self._store.release_to_pending([record.id for record in queued_records])

    rejected = sorted({item.device_token for item in items if item.device_token in invalid})
    if rejected:
      logger.info("Batch submission rejected %d invalid tokens", len(rejected))
    ids = [record.id for record in queued_records] + [record.id for record in scheduled_records]
    return BatchSubmitResult(accepted=len(ids), rejected_tokens=rejected, ids=ids)

  async def list_history(self, filters: HistoryFilters) -> list[HistoryRecord]:
    return await self._store.list_history(filters)

  async def list_pending(self, *, limit: int = 100) -> list[PendingRecord]:
    return await self._store.list_pending(limit=limit)

  async def stats(self) -> dict[str, Any]:
    """Today's outcome counts, pending counts and per-queue job counts."""
    now = self._clock()
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    outcomes = await self._store.outcome_counts(since=start_of_day)
    pending = await self._store.count_pending()
    queues = await self._queues.stats()
    return {
      "today": {"sent": outcomes.get("sent", 0), "failed": outcomes.get("failed", 0), "invalid_token": outcomes.get("invalid_token", 0)},
      "pending": {"pending": pending.get("pending", 0), "processing": pending.get("processing", 0), "failed": pending.get("failed", 0)},
      "queues": {name: counts.as_dict() for name, counts in queues.items()},
    }

  async def run_scheduled_sweep_now(self) -> SweepReport:
    return await self._scheduler.run_now()

  async def validate_token(self, token: str) -> TokenValidation:
    return await self._gateway.validate_token(token)

  async def requeue_failed(self, ids: Sequence[str] | None = None) -> int:
    """Hand failed rows back to pending so the next sweep promotes them."""
    count = await self._store.requeue_failed(ids)
    logger.info("Requeued %d failed notifications", count)
    return count

  async def pause_queues(self) -> dict[str, bool]:
    return await self._queues.pause_all()

  async def resume_queues(self) -> dict[str, bool]:
    return await self._queues.resume_all()

  async def clean_queues(self) -> dict[str, int]:
    return await self._maintenance.clean_queues()
