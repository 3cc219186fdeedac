from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import new_notification
from pushflow.jobs.models import QueueName
from pushflow.jobs.queues import decode_batch, decode_notification
from pushflow.notifications.contracts import InvalidDeviceTokenError, Outcome, PendingStatus
from pushflow.notifications.service import NotificationService
from pushflow.storage.notifications_repo import HistoryFilters, TerminalOutcome


async def _mark_invalid(store, token: str) -> None:
  [record] = await store.insert_pending([new_notification(token)], status=PendingStatus.PROCESSING)
  await store.record_outcome(record.id, TerminalOutcome(outcome=Outcome.INVALID_TOKEN, attempts=1, invalid_token_reason="messaging/registration-token-not-registered"))


@pytest.mark.anyio
async def test_submit_immediate_enqueues_single_job(service: NotificationService, store, broker) -> None:
  result = await service.submit(new_notification(priority="high"))

  assert result.status == "queued"
  assert store.pending[result.id].status == PendingStatus.PROCESSING.value
  [job] = broker.jobs_in(QueueName.SINGLE.value)
  assert decode_notification(job.payload).id == result.id
  assert job.priority == 10


@pytest.mark.anyio
async def test_submit_future_waits_for_sweep(service: NotificationService, store, broker, clock) -> None:
  result = await service.submit(new_notification(scheduled_at=clock() + timedelta(hours=2)))

  assert result.status == "scheduled"
  assert store.pending[result.id].status == PendingStatus.PENDING.value
  assert broker.jobs == {}


@pytest.mark.anyio
async def test_submit_rejects_known_invalid_token(service: NotificationService, store) -> None:
  await _mark_invalid(store, "dead-token")

  with pytest.raises(InvalidDeviceTokenError):
    await service.submit(new_notification("dead-token"))
  assert store.pending == {}


@pytest.mark.anyio
async def test_submit_hands_row_to_sweep_when_broker_is_down(service: NotificationService, store, broker) -> None:
  broker.unavailable = True

  result = await service.submit(new_notification())

  assert result.status == "queued"
  assert store.pending[result.id].status == PendingStatus.PENDING.value


@pytest.mark.anyio
async def test_submit_batch_skips_invalid_tokens(service: NotificationService, store, broker, clock) -> None:
  await _mark_invalid(store, "dead")
  items = [new_notification("a"), new_notification("dead"), new_notification("b"), new_notification("later", scheduled_at=clock() + timedelta(days=1))]

  result = await service.submit_batch(items)

  assert result.accepted == 3
  assert result.rejected_tokens == ["dead"]
  [job] = broker.jobs_in(QueueName.BATCH.value)
  assert [item.device_token for item in decode_batch(job.payload).notifications] == ["a", "b"]
  statuses = {store.pending[notification_id].device_token: store.pending[notification_id].status for notification_id in result.ids}
  assert statuses == {"a": "processing", "b": "processing", "later": "pending"}


@pytest.mark.anyio
async def test_stats_combines_history_pending_and_queues(service: NotificationService, store, dispatcher, queues) -> None:
  await service.submit(new_notification())
  [job] = queues.broker.jobs_in(QueueName.SINGLE.value)
  await dispatcher.handle_single(job.to_job())
  await service.submit(new_notification("second"))

  stats = await service.stats()

  assert stats["today"] == {"sent": 1, "failed": 0, "invalid_token": 0}
  assert stats["pending"] == {"pending": 0, "processing": 1, "failed": 0}
  assert stats["queues"]["single"]["waiting"] == 2


@pytest.mark.anyio
async def test_history_filters(service: NotificationService, store, dispatcher, queues) -> None:
  for token in ("a", "b"):
    await service.submit(new_notification(token))
  for job in queues.broker.jobs_in(QueueName.SINGLE.value):
    await dispatcher.handle_single(job.to_job())

  rows = await service.list_history(HistoryFilters(device_token="b"))
  assert [row.device_token for row in rows] == ["b"]
  assert len(await service.list_history(HistoryFilters(outcome=Outcome.SENT, limit=1))) == 1


@pytest.mark.anyio
async def test_requeue_failed_returns_rows_to_pending(service: NotificationService, store) -> None:
  records = await store.insert_pending([new_notification("a"), new_notification("b")], status=PendingStatus.PROCESSING)
  await store.set_status([record.id for record in records], PendingStatus.FAILED, last_error="batch failed")

  assert await service.requeue_failed([records[0].id]) == 1
  assert store.pending[records[0].id].status == PendingStatus.PENDING.value
  assert store.pending[records[1].id].status == PendingStatus.FAILED.value
  assert await service.requeue_failed() == 1


@pytest.mark.anyio
async def test_list_pending_only_returns_pending_rows(service: NotificationService, clock) -> None:
  await service.submit(new_notification("now"))
  scheduled = await service.submit(new_notification("later", scheduled_at=clock() + timedelta(minutes=5)))

  rows = await service.list_pending()
  assert [row.id for row in rows] == [scheduled.id]
