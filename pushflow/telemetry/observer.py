"""Observers receiving structured job outcomes from the worker loop."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pushflow.jobs.models import JobState, QueueJob


class JobObserver(Protocol):
  def job_completed(self, job: QueueJob, result: dict[str, Any]) -> None: ...

  def job_failed(self, job: QueueJob, error: BaseException, next_state: JobState) -> None: ...

  def job_stalled(self, job: QueueJob) -> None: ...


class LoggingJobObserver:
  """Log every job outcome at a level matching its severity."""

  def __init__(self, logger: logging.Logger | None = None) -> None:
    self._logger = logger or logging.getLogger("pushflow.jobs")

  def job_completed(self, job: QueueJob, result: dict[str, Any]) -> None:
    self._logger.info("Job %s (%s/%s) completed: %s", job.id, job.queue, job.name, result.get("status"))

  def job_failed(self, job: QueueJob, error: BaseException, next_state: JobState) -> None:
    if next_state is JobState.WAITING:
      self._logger.warning("Job %s (%s) failed attempt %d/%d, retrying: %s", job.id, job.queue, job.attempts_made, job.max_attempts, error)
      return
    self._logger.error("Job %s (%s) failed permanently after %d attempts: %s", job.id, job.queue, job.attempts_made, error)

  def job_stalled(self, job: QueueJob) -> None:
    self._logger.warning("Job %s (%s) stalled; redelivering attempt %d (stall %d)", job.id, job.queue, job.attempts_made, job.stalled_count)
