"""Job handlers that deliver notifications and settle their store state."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import msgspec

from pushflow.jobs.models import QueueJob, QueueName
from pushflow.jobs.queues import QueueManager, decode_batch, decode_notification
from pushflow.notifications.contracts import BatchDeliveryError, DeliveryResult, NotificationPayload, Outcome, PendingStatus
from pushflow.notifications.gateway import DeliveryGateway
from pushflow.storage.notifications_repo import NotificationStore, TerminalOutcome

logger = logging.getLogger(__name__)

JobHandler = Callable[[QueueJob], Awaitable[dict[str, Any]]]


@dataclass(frozen=True)
class JobHandlerRegistry:
  """Registry mapping queue names to job handlers."""

  handlers: dict[str, JobHandler]

  def resolve(self, queue: str) -> JobHandler:
    handler = self.handlers.get(queue)
    if handler is None:
      raise ValueError(f"Unsupported queue: {queue}")
    return handler


class Dispatcher:
  """Executes delivery for single, batch and retry jobs.

  `payload.attempts` is the number of delivery attempts made before this one.
  A retryable failure is retried while that count is below `max_attempts`,
  so with the default of 3 the fourth failed delivery is terminal.
  """

  def __init__(self, *, store: NotificationStore, gateway: DeliveryGateway, queues: QueueManager, max_attempts: int = 3) -> None:
    self._store = store
    self._gateway = gateway
    self._queues = queues
    self._max_attempts = max_attempts

  def registry(self) -> JobHandlerRegistry:
    return JobHandlerRegistry({QueueName.SINGLE.value: self.handle_single, QueueName.BATCH.value: self.handle_batch, QueueName.RETRY.value: self.handle_retry})

  def _can_retry(self, attempts: int) -> bool:
    return attempts < self._max_attempts

  async def handle_single(self, job: QueueJob) -> dict[str, Any]:
    payload = decode_notification(job.payload)
    await self._store.set_status([payload.id], PendingStatus.PROCESSING)
    result = await self._gateway.send(payload)
    return await self._settle_single(job, payload, result)

  async def handle_batch(self, job: QueueJob) -> dict[str, Any]:
    batch = decode_batch(job.payload)
    payloads = batch.notifications
    ids = [payload.id for payload in payloads]
    await self._store.set_status(ids, PendingStatus.PROCESSING)

    # A whole-call failure leaves every row failed and lets the broker retry the job.
    try:
      results = await self._gateway.send_batch(payloads)
    except BatchDeliveryError as exc:
      logger.error("Batch job %s failed as a whole (%d notifications): %s", job.id, len(ids), exc)
      await self._store.set_status(ids, PendingStatus.FAILED, last_error=str(exc), increment_attempts=True)
      raise

    # Settle each notification on its own; one bad token never holds back the rest.
    summary = {"sent": 0, "failed": 0, "invalid_token": 0}
    for payload, result in zip(payloads, results, strict=True):
      if result.success:
        await self._finalize(payload, self._sent(payload, result))
        summary["sent"] += 1
      elif result.token_invalid:
        await self._finalize(payload, self._invalid(payload, result))
        summary["invalid_token"] += 1
      else:
        # Batches never re-enqueue individual retries.
        await self._finalize(payload, self._failed(payload, result))
        summary["failed"] += 1

    logger.info("Batch job %s settled: %s", job.id, summary)
    return {"status": "batch", "total": len(payloads), **summary}

  async def handle_retry(self, job: QueueJob) -> dict[str, Any]:
    payload = decode_notification(job.payload)
    # A redelivered job takes back the row its expired lease left in processing.
    if not await self._store.claim_for_delivery(payload.id, reclaim=job.stalled):
      logger.info("Retry job %s skipped: notification %s is no longer pending", job.id, payload.id)
      return {"status": "skipped", "id": payload.id}

    result = await self._gateway.send(payload)
    if result.success:
      return await self._finalize(payload, self._sent(payload, result))
    if result.token_invalid:
      return await self._finalize(payload, self._invalid(payload, result))
    if result.retryable and self._can_retry(payload.attempts):
      # Retry queue allows one attempt per enqueue; the sweep promotes the row again.
      await self._store.reschedule(payload.id, attempts=payload.attempts + 1, last_error=result.error_message)
      logger.info("Notification %s handed back to pending after retry %d", payload.id, payload.retry_attempt)
      return {"status": "requeued", "id": payload.id, "attempts": payload.attempts + 1}
    return await self._finalize(payload, self._failed(payload, result))

  async def settle_dead(self, job: QueueJob, error: str) -> int:
    """Hand back the rows of a job the broker gave up on.

    Rows still in processing count the lost attempt and return to pending for the sweep,
    or become failed once attempts are spent so `requeue_failed` can recover them.
    """
    if job.queue == QueueName.BATCH.value:
      ids = [payload.id for payload in decode_batch(job.payload).notifications]
    else:
      ids = [decode_notification(job.payload).id]
    settled = await self._store.settle_abandoned(ids, last_error=error, max_attempts=self._max_attempts)
    if settled:
      logger.warning("Job %s on %s died; %d notifications handed back: %s", job.id, job.queue, settled, error)
    return settled

  async def _settle_single(self, job: QueueJob, payload: NotificationPayload, result: DeliveryResult) -> dict[str, Any]:
    # Success and token-invalid are final regardless of attempts left.
    if result.success:
      return await self._finalize(payload, self._sent(payload, result))
    if result.token_invalid:
      return await self._finalize(payload, self._invalid(payload, result))
    if result.retryable and self._can_retry(payload.attempts):
      attempts = payload.attempts + 1
      retry_job = await self._queues.enqueue_retry(msgspec.structs.replace(payload, attempts=attempts), original_job_id=job.id)
      # Keep the sweep away from the row until the retry job becomes available.
      await self._store.reschedule(payload.id, attempts=attempts, last_error=result.error_message, scheduled_at=retry_job.available_at)
      return {"status": "retry_scheduled", "id": payload.id, "attempts": attempts, "retry_job_id": retry_job.id}
    return await self._finalize(payload, self._failed(payload, result))

  async def _finalize(self, payload: NotificationPayload, outcome: TerminalOutcome) -> dict[str, Any]:
    written = await self._store.record_outcome(payload.id, outcome)
    if not written:
      logger.info("Notification %s already finalized; %s outcome dropped", payload.id, outcome.outcome.value)
      return {"status": "duplicate", "id": payload.id}
    log = logger.info if outcome.outcome is Outcome.SENT else logger.warning
    log("Notification %s finalized as %s after %d attempts", payload.id, outcome.outcome.value, outcome.attempts)
    return {"status": outcome.outcome.value, "id": payload.id}

  def _sent(self, payload: NotificationPayload, result: DeliveryResult) -> TerminalOutcome:
    return TerminalOutcome(outcome=Outcome.SENT, attempts=payload.attempts + 1, provider_response=result.provider_response)

  def _invalid(self, payload: NotificationPayload, result: DeliveryResult) -> TerminalOutcome:
    reason = result.error_code.value if result.error_code else None
    return TerminalOutcome(outcome=Outcome.INVALID_TOKEN, attempts=payload.attempts + 1, last_error=result.error_message, invalid_token_reason=reason or "invalid")

  def _failed(self, payload: NotificationPayload, result: DeliveryResult) -> TerminalOutcome:
    return TerminalOutcome(outcome=Outcome.FAILED, attempts=payload.attempts + 1, last_error=result.error_message)

