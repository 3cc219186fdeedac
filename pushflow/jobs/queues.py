"""Queue manager for the single, batch and retry delivery queues."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

import msgspec

from pushflow.jobs.broker import JobBroker
from pushflow.jobs.models import JobName, QueueCounts, QueueJob, QueueName, QueuePolicy, priority_weight
from pushflow.notifications.contracts import BatchPayload, NotificationPayload, Priority

logger = logging.getLogger(__name__)

BATCH_JOB_LIMIT = 500


def _utcnow() -> datetime:
  return datetime.now(UTC)


def encode_payload(payload: msgspec.Struct) -> dict:
  return msgspec.to_builtins(payload)


def decode_notification(raw: dict) -> NotificationPayload:
  return msgspec.convert(raw, NotificationPayload)


def decode_batch(raw: dict) -> BatchPayload:
  return msgspec.convert(raw, BatchPayload)


class QueueManager:
  """Enqueue delivery jobs with per-queue policy and run administrative actions across queues."""

  def __init__(self, broker: JobBroker, policies: dict[QueueName, QueuePolicy], *, batch_limit: int = BATCH_JOB_LIMIT, clock: Callable[[], datetime] = _utcnow) -> None:
    self._broker = broker
    self._policies = policies
    self._batch_limit = batch_limit
    self._clock = clock

  @property
  def broker(self) -> JobBroker:
    return self._broker

  def policy(self, queue: QueueName) -> QueuePolicy:
    return self._policies[queue]

  async def enqueue_single(self, payload: NotificationPayload, *, priority: str | None = None, delay_seconds: float | None = None, scheduled_at: datetime | None = None) -> QueueJob:
    """Enqueue one notification; `scheduled_at` converts to a non-negative delay."""
    if scheduled_at is not None and delay_seconds is None:
      delay_seconds = max(0.0, (scheduled_at - self._clock()).total_seconds())
    weight = priority_weight(priority or payload.priority)
    job = await self._broker.enqueue(self._policies[QueueName.SINGLE], JobName.SEND_NOTIFICATION.value, encode_payload(payload), priority=weight, delay_seconds=delay_seconds or 0.0)
    logger.debug("Enqueued notification %s as job %s (priority=%d)", payload.id, job.id, weight)
    return job

  async def enqueue_batch(self, payloads: Sequence[NotificationPayload]) -> list[QueueJob]:
    """Enqueue one batch job per chunk of at most 500 notifications."""
    jobs: list[QueueJob] = []
    policy = self._policies[QueueName.BATCH]
    for start in range(0, len(payloads), self._batch_limit):
      chunk = list(payloads[start : start + self._batch_limit])
      job = await self._broker.enqueue(policy, JobName.SEND_BATCH.value, encode_payload(BatchPayload(notifications=chunk)), priority=priority_weight(Priority.NORMAL.value))
      jobs.append(job)
    if jobs:
      logger.info("Enqueued %d notifications as %d batch jobs", len(payloads), len(jobs))
    return jobs

  async def enqueue_retry(self, payload: NotificationPayload, *, original_job_id: str | None) -> QueueJob:
    """Enqueue a retry with the fixed retry-queue delay."""
    policy = self._policies[QueueName.RETRY]
    retry_payload = msgspec.structs.replace(payload, retry_attempt=payload.retry_attempt + 1, original_job_id=original_job_id)
    job = await self._broker.enqueue(policy, JobName.RETRY_NOTIFICATION.value, encode_payload(retry_payload), priority=priority_weight(payload.priority), delay_seconds=policy.backoff_delay_seconds)
    logger.info("Scheduled retry %d for notification %s in %.0fs", retry_payload.retry_attempt, payload.id, policy.backoff_delay_seconds)
    return job

  async def stats(self) -> dict[str, QueueCounts]:
    return {queue.value: await self._broker.counts(queue.value) for queue in self._policies}

  async def pause_all(self) -> dict[str, bool]:
    """Pause every queue; not atomic, each queue reports its own outcome."""
    return await self._for_each_queue("pause", self._broker.pause)

  async def resume_all(self) -> dict[str, bool]:
    return await self._for_each_queue("resume", self._broker.resume)

  async def clean(self, *, completed_ttl: timedelta, failed_ttl: timedelta) -> dict[str, int]:
    """Purge terminal jobs past retention in every queue."""
    now = self._clock()
    removed: dict[str, int] = {}
    for queue in self._policies:
      try:
        removed[queue.value] = await self._broker.clean(queue.value, completed_before=now - completed_ttl, failed_before=now - failed_ttl)
      except Exception:
        logger.error("Failed to clean queue %s", queue.value, exc_info=True)
        removed[queue.value] = 0
    return removed

  async def _for_each_queue(self, action: str, operation: Callable[[str], object]) -> dict[str, bool]:
    outcome: dict[str, bool] = {}
    for queue in self._policies:
      try:
        await operation(queue.value)
        outcome[queue.value] = True
      except Exception:
        logger.error("Failed to %s queue %s", action, queue.value, exc_info=True)
        outcome[queue.value] = False
    logger.info("Queue %s results: %s", action, outcome)
    return outcome
