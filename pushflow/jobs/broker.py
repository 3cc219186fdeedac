"""Contract for the durable priority job broker."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from pushflow.jobs.models import JobState, QueueCounts, QueueJob, QueuePolicy


class JobBroker(Protocol):
  """Durable job queue with lease-based claiming."""

  async def enqueue(self, policy: QueuePolicy, name: str, payload: dict[str, Any], *, priority: int, delay_seconds: float = 0.0) -> QueueJob:
    """Persist a waiting job, available after `delay_seconds`."""

  async def claim(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueueJob]:
    """Lease up to `limit` available jobs (highest priority, then earliest available); empty when paused.

    A job whose lease expired is handed out again with `stalled` set. The redelivery
    bumps `stalled_count`, not `attempts_made`.
    """

  async def reap_stalled(self, queue: str) -> list[QueueJob]:
    """Fail jobs whose lease expired after `max_stalled` redeliveries and return them."""

  async def complete(self, job_id: str, result: dict[str, Any] | None = None) -> None:
    """Acknowledge a job as completed."""

  async def fail(self, job_id: str, error: str) -> JobState:
    """Record a handler failure; returns WAITING when a backoff retry was scheduled, FAILED otherwise."""

  async def counts(self, queue: str) -> QueueCounts:
    """Return per-state counts for one queue."""

  async def pause(self, queue: str) -> None:
    """Stop handing out jobs for a queue."""

  async def resume(self, queue: str) -> None:
    """Resume handing out jobs for a queue."""

  async def is_paused(self, queue: str) -> bool:
    """Whether a queue is paused."""

  async def clean(self, queue: str, *, completed_before: datetime, failed_before: datetime) -> int:
    """Delete terminal jobs finished before the given cutoffs."""
