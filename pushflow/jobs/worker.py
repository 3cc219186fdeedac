"""Queue consumers and periodic loops for notification delivery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pushflow.jobs.broker import JobBroker
from pushflow.jobs.dispatch import JobHandler
from pushflow.jobs.models import JobState, QueueJob, QueuePolicy
from pushflow.jobs.queues import QueueManager
from pushflow.jobs.scheduler import Scheduler
from pushflow.notifications.contracts import InfrastructureUnavailableError
from pushflow.services.maintenance import Maintenance
from pushflow.telemetry.observer import JobObserver

logger = logging.getLogger(__name__)

DeadJobHandler = Callable[[QueueJob, str], Awaitable[Any]]

HOURLY_SECONDS = 3600.0
DAILY_SECONDS = 86400.0


class QueueConsumer:
  """Claims jobs from one queue and runs each in its own task, bounded by the queue's concurrency."""

  def __init__(self, *, broker: JobBroker, policy: QueuePolicy, handler: JobHandler, observer: JobObserver, lease_seconds: int, poll_interval: float, on_dead: DeadJobHandler | None = None) -> None:
    self._broker = broker
    self._policy = policy
    self._handler = handler
    self._on_dead = on_dead
    self._observer = observer
    self._lease_seconds = lease_seconds
    self._poll_interval = poll_interval
    self._inflight: set[asyncio.Task] = set()
    self._stopping = asyncio.Event()

  @property
  def queue(self) -> str:
    return self._policy.queue.value

  @property
  def inflight(self) -> int:
    return len(self._inflight)

  async def run(self) -> None:
    logger.info("Consumer for queue %s started (concurrency=%d)", self.queue, self._policy.concurrency)
    while not self._stopping.is_set():
      claimed = await self.poll_once()
      if claimed == 0:
        await self._idle()
    logger.info("Consumer for queue %s stopped", self.queue)

  async def poll_once(self) -> int:
    """Claim as many jobs as there are free slots and start them; returns the number claimed."""
    free = self._policy.concurrency - len(self._inflight)
    if free <= 0:
      return 0
    try:
      # Jobs that stalled past their limit are failed before anything new is leased.
      for dead in await self._broker.reap_stalled(self.queue):
        self._observer.job_failed(dead, RuntimeError(dead.last_error), JobState.FAILED)
        await self._release(dead, dead.last_error or "stalled")
      jobs = await self._broker.claim(self.queue, limit=free, lease_seconds=self._lease_seconds)
    except InfrastructureUnavailableError as exc:
      logger.warning("Queue %s unavailable while claiming: %s", self.queue, exc)
      return 0

    for job in jobs:
      if job.stalled:
        self._observer.job_stalled(job)
      task = asyncio.create_task(self.process_job(job), name=f"{self.queue}:{job.id}")
      self._inflight.add(task)
      task.add_done_callback(self._inflight.discard)
    return len(jobs)

  async def process_job(self, job: QueueJob) -> dict[str, Any] | None:
    """Run one job and acknowledge it; errors never escape to sibling jobs."""
    try:
      result = await self._handler(job)
    except InfrastructureUnavailableError as exc:
      # Left unacknowledged; the lease expires and the broker redelivers it.
      logger.warning("Job %s on %s left for redelivery: %s", job.id, self.queue, exc)
      return None
    except Exception as exc:
      logger.error("Job %s on %s raised", job.id, self.queue, exc_info=True)
      try:
        next_state = await self._broker.fail(job.id, f"{type(exc).__name__}: {exc}")
      except InfrastructureUnavailableError as broker_exc:
        logger.warning("Could not record failure for job %s: %s", job.id, broker_exc)
        return None
      self._observer.job_failed(job, exc, next_state)
      # The broker gave up; the job's rows must not stay in processing.
      if next_state is JobState.FAILED:
        await self._release(job, f"{type(exc).__name__}: {exc}")
      return None

    try:
      await self._broker.complete(job.id, result)
    except InfrastructureUnavailableError as exc:
      logger.warning("Could not acknowledge job %s: %s", job.id, exc)
      return result
    self._observer.job_completed(job, result)
    return result

  async def _release(self, job: QueueJob, error: str) -> None:
    if self._on_dead is None:
      return
    try:
      await self._on_dead(job, error)
    except InfrastructureUnavailableError as exc:
      logger.warning("Could not hand back rows of dead job %s: %s", job.id, exc)

  async def stop(self) -> None:
    self._stopping.set()
    if self._inflight:
      await asyncio.gather(*self._inflight, return_exceptions=True)

  async def _idle(self) -> None:
    try:
      await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)
    except TimeoutError:
      pass


class NotificationWorkers:
  """Owns the queue consumers plus the sweep, hourly cleanup and daily purge loops."""

  def __init__(self, *, queues: QueueManager, consumers: list[QueueConsumer], scheduler: Scheduler, maintenance: Maintenance, sweep_interval: float) -> None:
    self._queues = queues
    self._consumers = consumers
    self._scheduler = scheduler
    self._maintenance = maintenance
    self._sweep_interval = sweep_interval
    self._tasks: list[asyncio.Task] = []

  @property
  def running(self) -> bool:
    return bool(self._tasks)

  async def start(self) -> None:
    if self._tasks:
      logger.warning("Notification workers already started")
      return

    # Fails fast when the broker store is unreachable.
    await self._queues.stats()

    for consumer in self._consumers:
      self._tasks.append(asyncio.create_task(consumer.run(), name=f"consumer:{consumer.queue}"))
    self._tasks.append(asyncio.create_task(_every(self._sweep_interval, "scheduled sweep", self._scheduler.sweep), name="scheduled-sweep"))
    self._tasks.append(asyncio.create_task(_every(HOURLY_SECONDS, "queue cleanup", self._maintenance.clean_queues), name="queue-cleanup"))
    self._tasks.append(asyncio.create_task(_every(DAILY_SECONDS, "record purge", self._maintenance.purge_records), name="record-purge"))
    logger.info("Notification workers started: %d consumers", len(self._consumers))

  async def stop(self) -> None:
    if not self._tasks:
      return
    await asyncio.gather(*(consumer.stop() for consumer in self._consumers))
    for task in self._tasks:
      task.cancel()
    await asyncio.gather(*self._tasks, return_exceptions=True)
    self._tasks = []
    logger.info("Notification workers stopped")


async def _every(interval: float, label: str, operation: Callable[[], Awaitable[Any]]) -> None:
  while True:
    await asyncio.sleep(interval)
    try:
      await operation()
    except Exception:
      logger.error("Periodic %s failed", label, exc_info=True)
