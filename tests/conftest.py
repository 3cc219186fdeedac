"""Shared fixtures and in-memory doubles for the notification engine."""

from __future__ import annotations

import dataclasses
import itertools
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pushflow.config import Settings
from pushflow.jobs.dispatch import Dispatcher
from pushflow.jobs.models import JobState, QueueCounts, QueueJob, QueuePolicy, build_queue_policies, compute_backoff_seconds
from pushflow.jobs.queues import QueueManager
from pushflow.jobs.scheduler import Scheduler
from pushflow.notifications.contracts import InfrastructureUnavailableError, PendingStatus, Priority, ProviderError, ProviderErrorCode, ProviderResponse, PushMessage
from pushflow.notifications.gateway import DeliveryGateway
from pushflow.notifications.service import NotificationService
from pushflow.services.maintenance import Maintenance
from pushflow.storage.notifications_repo import HistoryFilters, HistoryRecord, NewNotification, PendingRecord, TerminalOutcome
from pushflow.storage.postgres_queue_repo import STALLED_ERROR


@pytest.fixture
def anyio_backend():
  return "asyncio"


class FrozenClock:
  """Callable clock that only moves when told to."""

  def __init__(self, start: datetime | None = None) -> None:
    self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

  def __call__(self) -> datetime:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now = self.now + timedelta(seconds=seconds)


class InMemoryNotificationStore:
  """Dictionary-backed NotificationStore with the same semantics as the Postgres store."""

  def __init__(self, clock: FrozenClock) -> None:
    self._clock = clock
    self.pending: dict[str, PendingRecord] = {}
    self.history: list[HistoryRecord] = []
    self.invalid_tokens: dict[str, tuple[str | None, datetime]] = {}
    self._history_ids = itertools.count(1)

  async def insert_pending(self, items: Sequence[NewNotification], *, status: PendingStatus) -> list[PendingRecord]:
    records = []
    for item in items:
      record = PendingRecord(
        id=str(uuid.uuid4()),
        device_token=item.device_token,
        title=item.title,
        body=item.body,
        additional_data=dict(item.additional_data),
        notification_type=item.notification_type,
        priority=item.priority,
        scheduled_at=item.scheduled_at or self._clock(),
        status=status.value,
        attempts=0,
        last_error=None,
        created_at=self._clock(),
      )
      self.pending[record.id] = record
      records.append(record)
    return records

  async def set_status(self, ids: Sequence[str], status: PendingStatus, *, last_error: str | None = None, increment_attempts: bool = False) -> int:
    count = 0
    for notification_id in ids:
      record = self.pending.get(notification_id)
      if record is None:
        continue
      changes: dict[str, Any] = {"status": status.value}
      if last_error is not None:
        changes["last_error"] = last_error
      if increment_attempts:
        changes["attempts"] = record.attempts + 1
      self.pending[notification_id] = dataclasses.replace(record, **changes)
      count += 1
    return count

  async def claim_for_delivery(self, notification_id: str, *, reclaim: bool = False) -> bool:
    record = self.pending.get(notification_id)
    allowed = {PendingStatus.PENDING.value, PendingStatus.PROCESSING.value} if reclaim else {PendingStatus.PENDING.value}
    if record is None or record.status not in allowed:
      return False
    self.pending[notification_id] = dataclasses.replace(record, status=PendingStatus.PROCESSING.value)
    return True

  async def claim_due(self, *, now: datetime, limit: int) -> list[PendingRecord]:
    due = [record for record in self.pending.values() if record.status == PendingStatus.PENDING.value and record.scheduled_at <= now]
    due.sort(key=lambda record: (0 if record.priority == Priority.HIGH.value else 1, record.scheduled_at))
    claimed = []
    for record in due[:limit]:
      updated = dataclasses.replace(record, status=PendingStatus.PROCESSING.value)
      self.pending[record.id] = updated
      claimed.append(updated)
    return claimed

  async def release_to_pending(self, ids: Sequence[str]) -> int:
    count = 0
    for notification_id in ids:
      record = self.pending.get(notification_id)
      if record is not None and record.status == PendingStatus.PROCESSING.value:
        self.pending[notification_id] = dataclasses.replace(record, status=PendingStatus.PENDING.value)
        count += 1
    return count

  async def settle_abandoned(self, ids: Sequence[str], *, last_error: str, max_attempts: int) -> int:
    count = 0
    for notification_id in ids:
      record = self.pending.get(notification_id)
      if record is None or record.status != PendingStatus.PROCESSING.value:
        continue
      attempts = record.attempts + 1
      status = PendingStatus.FAILED if attempts > max_attempts else PendingStatus.PENDING
      self.pending[notification_id] = dataclasses.replace(record, status=status.value, attempts=attempts, last_error=last_error)
      count += 1
    return count

  async def reschedule(self, notification_id: str, *, attempts: int, last_error: str | None, scheduled_at: datetime | None = None) -> bool:
    record = self.pending.get(notification_id)
    if record is None:
      return False
    changes: dict[str, Any] = {"status": PendingStatus.PENDING.value, "attempts": attempts, "last_error": last_error}
    if scheduled_at is not None:
      changes["scheduled_at"] = scheduled_at
    self.pending[notification_id] = dataclasses.replace(record, **changes)
    return True

  async def record_outcome(self, notification_id: str, outcome: TerminalOutcome) -> bool:
    record = self.pending.pop(notification_id, None)
    if record is None:
      return False
    self.history.append(
      HistoryRecord(
        id=next(self._history_ids),
        original_id=record.id,
        device_token=record.device_token,
        title=record.title,
        body=record.body,
        additional_data=dict(record.additional_data),
        notification_type=record.notification_type,
        priority=record.priority,
        outcome=outcome.outcome.value,
        attempts=max(outcome.attempts, record.attempts + 1),
        provider_response=outcome.provider_response,
        last_error=outcome.last_error,
        sent_at=self._clock(),
      )
    )
    if outcome.invalid_token_reason is not None and record.device_token not in self.invalid_tokens:
      self.invalid_tokens[record.device_token] = (outcome.invalid_token_reason, self._clock())
    return True

  async def find_invalid_tokens(self, tokens: Sequence[str]) -> set[str]:
    return {token for token in tokens if token in self.invalid_tokens}

  async def list_history(self, filters: HistoryFilters) -> list[HistoryRecord]:
    rows = list(self.history)
    if filters.device_token:
      rows = [row for row in rows if row.device_token == filters.device_token]
    if filters.outcome:
      rows = [row for row in rows if row.outcome == filters.outcome.value]
    if filters.date_from:
      rows = [row for row in rows if row.sent_at >= filters.date_from]
    if filters.date_to:
      rows = [row for row in rows if row.sent_at <= filters.date_to]
    rows.sort(key=lambda row: (row.sent_at, row.id), reverse=True)
    return rows[: filters.limit]

  async def list_pending(self, *, limit: int = 100) -> list[PendingRecord]:
    rows = [record for record in self.pending.values() if record.status == PendingStatus.PENDING.value]
    return sorted(rows, key=lambda record: record.scheduled_at)[:limit]

  async def outcome_counts(self, *, since: datetime) -> dict[str, int]:
    counts: dict[str, int] = {}
    for row in self.history:
      if row.sent_at >= since:
        counts[row.outcome] = counts.get(row.outcome, 0) + 1
    return counts

  async def count_pending(self) -> dict[str, int]:
    counts: dict[str, int] = {}
    for record in self.pending.values():
      counts[record.status] = counts.get(record.status, 0) + 1
    return counts

  async def requeue_failed(self, ids: Sequence[str] | None = None) -> int:
    count = 0
    for notification_id, record in list(self.pending.items()):
      if record.status != PendingStatus.FAILED.value or (ids and notification_id not in ids):
        continue
      self.pending[notification_id] = dataclasses.replace(record, status=PendingStatus.PENDING.value)
      count += 1
    return count

  async def purge_history(self, *, older_than: datetime) -> int:
    before = len(self.history)
    self.history = [row for row in self.history if row.sent_at >= older_than]
    return before - len(self.history)

  async def purge_invalid_tokens(self, *, older_than: datetime) -> int:
    expired = [token for token, (_, marked_at) in self.invalid_tokens.items() if marked_at < older_than]
    for token in expired:
      del self.invalid_tokens[token]
    return len(expired)


@dataclasses.dataclass
class _StoredJob:
  id: str
  queue: str
  name: str
  payload: dict[str, Any]
  priority: int
  state: str
  attempts_made: int
  max_attempts: int
  max_stalled: int
  backoff_kind: str
  backoff_delay_seconds: float
  available_at: datetime
  created_at: datetime
  lease_expires_at: datetime | None = None
  last_error: str | None = None
  result: dict[str, Any] | None = None
  finished_at: datetime | None = None
  stalled_count: int = 0

  def to_job(self, *, stalled: bool = False) -> QueueJob:
    return QueueJob(
      id=self.id,
      queue=self.queue,
      name=self.name,
      payload=dict(self.payload),
      priority=self.priority,
      state=self.state,
      attempts_made=self.attempts_made,
      max_attempts=self.max_attempts,
      available_at=self.available_at,
      last_error=self.last_error,
      stalled=stalled,
      stalled_count=self.stalled_count,
    )


class InMemoryJobBroker:
  """JobBroker double with leases, backoff and pause flags driven by a FrozenClock."""

  def __init__(self, clock: FrozenClock) -> None:
    self._clock = clock
    self.jobs: dict[str, _StoredJob] = {}
    self.paused: set[str] = set()
    self.unavailable = False
    self._sequence = itertools.count()

  def _check(self) -> None:
    if self.unavailable:
      raise InfrastructureUnavailableError("broker unavailable")

  async def enqueue(self, policy: QueuePolicy, name: str, payload: dict[str, Any], *, priority: int, delay_seconds: float = 0.0) -> QueueJob:
    self._check()
    now = self._clock()
    stored = _StoredJob(
      id=str(uuid.uuid4()),
      queue=policy.queue.value,
      name=name,
      payload=payload,
      priority=priority,
      state=JobState.WAITING.value,
      attempts_made=0,
      max_attempts=policy.max_attempts,
      max_stalled=policy.max_stalled,
      backoff_kind=policy.backoff_kind.value,
      backoff_delay_seconds=policy.backoff_delay_seconds,
      available_at=now + timedelta(seconds=max(delay_seconds, 0.0)),
      created_at=now + timedelta(microseconds=next(self._sequence)),
    )
    self.jobs[stored.id] = stored
    return stored.to_job()

  async def claim(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueueJob]:
    self._check()
    if queue in self.paused:
      return []
    now = self._clock()
    candidates = [
      job
      for job in self.jobs.values()
      if job.queue == queue and ((job.state == JobState.WAITING.value and job.available_at <= now) or (self._expired(job, now) and job.stalled_count < job.max_stalled))
    ]
    candidates.sort(key=lambda job: (-job.priority, job.available_at, job.created_at))
    claimed = []
    for job in candidates[:limit]:
      stalled = job.state == JobState.ACTIVE.value
      if stalled:
        job.stalled_count += 1
      else:
        job.state = JobState.ACTIVE.value
        job.attempts_made += 1
      job.lease_expires_at = now + timedelta(seconds=lease_seconds)
      claimed.append(job.to_job(stalled=stalled))
    return claimed

  async def reap_stalled(self, queue: str) -> list[QueueJob]:
    self._check()
    now = self._clock()
    dead = []
    for job in self.jobs.values():
      if job.queue == queue and self._expired(job, now) and job.stalled_count >= job.max_stalled:
        job.state = JobState.FAILED.value
        job.last_error = STALLED_ERROR
        job.finished_at = now
        job.lease_expires_at = None
        dead.append(job.to_job())
    return dead

  @staticmethod
  def _expired(job: _StoredJob, now: datetime) -> bool:
    return job.state == JobState.ACTIVE.value and job.lease_expires_at is not None and job.lease_expires_at < now

  async def complete(self, job_id: str, result: dict[str, Any] | None = None) -> None:
    self._check()
    job = self.jobs[job_id]
    job.state = JobState.COMPLETED.value
    job.result = result
    job.finished_at = self._clock()
    job.lease_expires_at = None

  async def fail(self, job_id: str, error: str) -> JobState:
    self._check()
    job = self.jobs[job_id]
    job.last_error = error
    job.lease_expires_at = None
    if job.attempts_made < job.max_attempts:
      job.state = JobState.WAITING.value
      job.available_at = self._clock() + timedelta(seconds=compute_backoff_seconds(job.backoff_kind, job.backoff_delay_seconds, job.attempts_made))
      return JobState.WAITING
    job.state = JobState.FAILED.value
    job.finished_at = self._clock()
    return JobState.FAILED

  async def counts(self, queue: str) -> QueueCounts:
    self._check()
    now = self._clock()
    jobs = [job for job in self.jobs.values() if job.queue == queue]
    delayed = sum(1 for job in jobs if job.state == JobState.WAITING.value and job.available_at > now)
    waiting = sum(1 for job in jobs if job.state == JobState.WAITING.value) - delayed
    return QueueCounts(
      waiting=waiting,
      active=sum(1 for job in jobs if job.state == JobState.ACTIVE.value),
      completed=sum(1 for job in jobs if job.state == JobState.COMPLETED.value),
      failed=sum(1 for job in jobs if job.state == JobState.FAILED.value),
      delayed=delayed,
    )

  async def pause(self, queue: str) -> None:
    self._check()
    self.paused.add(queue)

  async def resume(self, queue: str) -> None:
    self._check()
    self.paused.discard(queue)

  async def is_paused(self, queue: str) -> bool:
    return queue in self.paused

  async def clean(self, queue: str, *, completed_before: datetime, failed_before: datetime) -> int:
    self._check()
    doomed = [
      job.id
      for job in self.jobs.values()
      if job.queue == queue
      and job.finished_at is not None
      and ((job.state == JobState.COMPLETED.value and job.finished_at < completed_before) or (job.state == JobState.FAILED.value and job.finished_at < failed_before))
    ]
    for job_id in doomed:
      del self.jobs[job_id]
    return len(doomed)

  def jobs_in(self, queue: str) -> list[_StoredJob]:
    return sorted((job for job in self.jobs.values() if job.queue == queue), key=lambda job: job.created_at)


class FakePushProvider:
  """Scripted provider: tokens listed in `errors` fail with the mapped code."""

  def __init__(self) -> None:
    self.sent: list[PushMessage] = []
    self.dry_runs: list[PushMessage] = []
    self.batch_calls: list[list[PushMessage]] = []
    self.errors: dict[str, ProviderErrorCode] = {}
    self.batch_exception: Exception | None = None
    self._ids = itertools.count(1)

  def send(self, message: PushMessage, *, dry_run: bool = False) -> str:
    (self.dry_runs if dry_run else self.sent).append(message)
    code = self.errors.get(message.token)
    if code is not None:
      raise ProviderError(code, f"{code.value} for {message.token}")
    return f"projects/test/messages/{next(self._ids)}"

  def send_each(self, messages: list[PushMessage]) -> list[ProviderResponse]:
    if self.batch_exception is not None:
      raise self.batch_exception
    self.batch_calls.append(list(messages))
    responses = []
    for message in messages:
      code = self.errors.get(message.token)
      if code is None:
        responses.append(ProviderResponse(success=True, message_id=f"projects/test/messages/{next(self._ids)}"))
      else:
        responses.append(ProviderResponse(success=False, error_code=code, error_message=f"{code.value} for {message.token}"))
    return responses


def make_settings(**overrides: Any) -> Settings:
  base = Settings(
    environment="test",
    allowed_origins=("http://localhost",),
    debug=False,
    log_max_bytes=1024,
    log_backup_count=1,
    pg_dsn=None,
    pg_connect_timeout=5,
    firebase_project_id=None,
    firebase_service_account_json_path=None,
    push_enabled=False,
    workers_enabled=False,
    single_concurrency=5,
    batch_concurrency=2,
    retry_concurrency=3,
    max_retry_attempts=3,
    retry_delay_ms=5000,
    batch_retry_delay_ms=10000,
    retry_queue_delay_ms=30000,
    job_lease_seconds=300,
    poll_interval_seconds=0.01,
    sweep_interval_seconds=60.0,
  )
  return dataclasses.replace(base, **overrides)


@pytest.fixture
def settings() -> Settings:
  return make_settings()


@pytest.fixture
def clock() -> FrozenClock:
  return FrozenClock()


@pytest.fixture
def store(clock) -> InMemoryNotificationStore:
  return InMemoryNotificationStore(clock)


@pytest.fixture
def broker(clock) -> InMemoryJobBroker:
  return InMemoryJobBroker(clock)


@pytest.fixture
def provider() -> FakePushProvider:
  return FakePushProvider()


@pytest.fixture
def gateway(provider) -> DeliveryGateway:
  return DeliveryGateway(provider)


@pytest.fixture
def queues(broker, settings, clock) -> QueueManager:
  return QueueManager(broker, build_queue_policies(settings), clock=clock)


@pytest.fixture
def dispatcher(store, gateway, queues) -> Dispatcher:
  return Dispatcher(store=store, gateway=gateway, queues=queues, max_attempts=3)


@pytest.fixture
def scheduler(store, queues, clock) -> Scheduler:
  return Scheduler(store=store, queues=queues, clock=clock)


@pytest.fixture
def maintenance(store, queues, clock) -> Maintenance:
  return Maintenance(store=store, queues=queues, clock=clock)


@pytest.fixture
def service(store, queues, gateway, scheduler, maintenance, clock) -> NotificationService:
  return NotificationService(store=store, queues=queues, gateway=gateway, scheduler=scheduler, maintenance=maintenance, clock=clock)


def new_notification(token: str = "token-1", **overrides: Any) -> NewNotification:
  fields: dict[str, Any] = {"device_token": token, "title": "Hello", "body": "World", "additional_data": {"route": "/inbox"}}
  fields.update(overrides)
  return NewNotification(**fields)
