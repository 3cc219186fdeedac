"""Domain models for the durable delivery queues."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from pushflow.config import Settings
from pushflow.notifications.contracts import Priority


class QueueName(StrEnum):
  SINGLE = "single"
  BATCH = "batch"
  RETRY = "retry"


class JobName(StrEnum):
  SEND_NOTIFICATION = "send-notification"
  SEND_BATCH = "send-batch"
  RETRY_NOTIFICATION = "retry-notification"


class JobState(StrEnum):
  WAITING = "waiting"
  ACTIVE = "active"
  COMPLETED = "completed"
  FAILED = "failed"


class BackoffKind(StrEnum):
  EXPONENTIAL = "exponential"
  FIXED = "fixed"


PRIORITY_WEIGHTS: dict[str, int] = {Priority.HIGH.value: 10, Priority.NORMAL.value: 5}


def priority_weight(priority: str) -> int:
  """Broker ordering weight for a notification priority; unknown values rank as normal."""
  return PRIORITY_WEIGHTS.get(priority, PRIORITY_WEIGHTS[Priority.NORMAL.value])


def compute_backoff_seconds(kind: str, base_seconds: float, attempts_made: int) -> float:
  """Delay before the next broker-level attempt after `attempts_made` attempts."""
  if kind == BackoffKind.EXPONENTIAL.value:
    return base_seconds * (2 ** max(attempts_made - 1, 0))
  return base_seconds


@dataclass(frozen=True)
class QueuePolicy:
  """Per-queue concurrency, attempt cap and backoff."""

  queue: QueueName
  concurrency: int
  max_attempts: int
  backoff_kind: BackoffKind
  backoff_delay_seconds: float
  # Lease expiries tolerated before the broker gives up on a job.
  max_stalled: int = 1

  def backoff_delay(self, attempts_made: int) -> float:
    return compute_backoff_seconds(self.backoff_kind.value, self.backoff_delay_seconds, attempts_made)


@dataclass(frozen=True)
class QueueJob:
  """A job as handed out by the broker."""

  id: str
  queue: str
  name: str
  payload: dict[str, Any]
  priority: int
  state: str
  attempts_made: int
  max_attempts: int
  available_at: datetime
  last_error: str | None = None
  # True when the job is being redelivered after its lease expired.
  stalled: bool = False
  stalled_count: int = 0


@dataclass(frozen=True)
class QueueCounts:
  waiting: int = 0
  active: int = 0
  completed: int = 0
  failed: int = 0
  delayed: int = 0

  def as_dict(self) -> dict[str, int]:
    return {"waiting": self.waiting, "active": self.active, "completed": self.completed, "failed": self.failed, "delayed": self.delayed}


def build_queue_policies(settings: Settings) -> dict[QueueName, QueuePolicy]:
  """Build the three queue policies from settings."""
  return {
    QueueName.SINGLE: QueuePolicy(
      queue=QueueName.SINGLE, concurrency=settings.single_concurrency, max_attempts=settings.max_retry_attempts, backoff_kind=BackoffKind.EXPONENTIAL, backoff_delay_seconds=settings.retry_delay_ms / 1000.0
    ),
    QueueName.BATCH: QueuePolicy(queue=QueueName.BATCH, concurrency=settings.batch_concurrency, max_attempts=2, backoff_kind=BackoffKind.EXPONENTIAL, backoff_delay_seconds=settings.batch_retry_delay_ms / 1000.0),
    # One attempt per enqueue; re-delivery is driven by the sweep, not by backoff chaining.
    QueueName.RETRY: QueuePolicy(queue=QueueName.RETRY, concurrency=settings.retry_concurrency, max_attempts=1, backoff_kind=BackoffKind.FIXED, backoff_delay_seconds=settings.retry_queue_delay_ms / 1000.0),
  }
