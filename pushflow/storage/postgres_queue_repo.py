"""Postgres-backed job broker with lease-based claiming."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushflow.core.database import require_session_factory
from pushflow.jobs.broker import JobBroker
from pushflow.jobs.models import JobState, QueueCounts, QueueJob, QueuePolicy, compute_backoff_seconds
from pushflow.schema.queue_jobs import QueueControl, QueueJobRow
from pushflow.utils.db_retry import translate_db_errors

logger = logging.getLogger(__name__)

STALLED_ERROR = "job stalled more than allowable limit"


def _now() -> datetime:
  return datetime.now(UTC)


class PostgresJobBroker(JobBroker):
  """Store queue jobs in Postgres and hand them out with `FOR UPDATE SKIP LOCKED` leases."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def enqueue(self, policy: QueuePolicy, name: str, payload: dict[str, Any], *, priority: int, delay_seconds: float = 0.0) -> QueueJob:
    now = _now()
    row = QueueJobRow(
      id=uuid.uuid4(),
      queue=policy.queue.value,
      name=name,
      payload=payload,
      priority=priority,
      state=JobState.WAITING.value,
      attempts_made=0,
      max_attempts=policy.max_attempts,
      stalled_count=0,
      max_stalled=policy.max_stalled,
      backoff_kind=policy.backoff_kind.value,
      backoff_delay_seconds=policy.backoff_delay_seconds,
      available_at=now + timedelta(seconds=max(delay_seconds, 0.0)),
      created_at=now,
    )
    async with translate_db_errors("enqueue"):
      async with self._session_factory() as session:
        session.add(row)
        await session.commit()
    return self._row_to_job(row)

  async def claim(self, queue: str, *, limit: int, lease_seconds: int) -> list[QueueJob]:
    now = _now()
    async with translate_db_errors("claim"):
      async with self._session_factory() as session:
        async with session.begin():
          paused = await session.scalar(select(QueueControl.paused).where(QueueControl.queue == queue))
          if paused:
            return []

          stmt = (
            select(QueueJobRow)
            .where(
              QueueJobRow.queue == queue,
              or_(
                and_(QueueJobRow.state == JobState.WAITING.value, QueueJobRow.available_at <= now),
                and_(QueueJobRow.state == JobState.ACTIVE.value, QueueJobRow.lease_expires_at < now, QueueJobRow.stalled_count < QueueJobRow.max_stalled),
              ),
            )
            .order_by(QueueJobRow.priority.desc(), QueueJobRow.available_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
          )
          rows = (await session.execute(stmt)).scalars().all()
          jobs: list[QueueJob] = []
          for row in rows:
            stalled = row.state == JobState.ACTIVE.value
            # The stalled attempt was already counted when it was first claimed.
            if stalled:
              row.stalled_count = int(row.stalled_count or 0) + 1
            else:
              row.state = JobState.ACTIVE.value
              row.attempts_made = int(row.attempts_made or 0) + 1
            row.lease_expires_at = now + timedelta(seconds=lease_seconds)
            jobs.append(self._row_to_job(row, stalled=stalled))
    return jobs

  async def reap_stalled(self, queue: str) -> list[QueueJob]:
    now = _now()
    stmt = (
      update(QueueJobRow)
      .where(QueueJobRow.queue == queue, QueueJobRow.state == JobState.ACTIVE.value, QueueJobRow.lease_expires_at < now, QueueJobRow.stalled_count >= QueueJobRow.max_stalled)
      .values(state=JobState.FAILED.value, last_error=STALLED_ERROR, finished_at=now, lease_expires_at=None)
      .returning(QueueJobRow)
    )
    async with translate_db_errors("reap_stalled"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt, execution_options={"synchronize_session": False})).scalars().all()
        jobs = [self._row_to_job(row) for row in rows]
        await session.commit()
    if jobs:
      logger.warning("Failed %d jobs on queue %s: %s", len(jobs), queue, STALLED_ERROR)
    return jobs

  async def complete(self, job_id: str, result: dict[str, Any] | None = None) -> None:
    stmt = update(QueueJobRow).where(QueueJobRow.id == uuid.UUID(job_id)).values(state=JobState.COMPLETED.value, result=result, finished_at=_now(), lease_expires_at=None)
    async with translate_db_errors("complete"):
      async with self._session_factory() as session:
        await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()

  async def fail(self, job_id: str, error: str) -> JobState:
    now = _now()
    async with translate_db_errors("fail"):
      async with self._session_factory() as session:
        async with session.begin():
          row = await session.get(QueueJobRow, uuid.UUID(job_id), with_for_update=True)
          if row is None:
            return JobState.FAILED
          row.last_error = error
          row.lease_expires_at = None
          if row.attempts_made < row.max_attempts:
            delay = compute_backoff_seconds(row.backoff_kind, row.backoff_delay_seconds, row.attempts_made)
            row.state = JobState.WAITING.value
            row.available_at = now + timedelta(seconds=delay)
            return JobState.WAITING
          row.state = JobState.FAILED.value
          row.finished_at = now
    return JobState.FAILED

  async def counts(self, queue: str) -> QueueCounts:
    now = _now()
    delayed_expr = func.count().filter(and_(QueueJobRow.state == JobState.WAITING.value, QueueJobRow.available_at > now))
    stmt = select(QueueJobRow.state, func.count(), delayed_expr).where(QueueJobRow.queue == queue).group_by(QueueJobRow.state)
    async with translate_db_errors("counts"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).all()
    totals: dict[str, int] = {}
    delayed = 0
    for state, count, state_delayed in rows:
      totals[str(state)] = int(count)
      delayed += int(state_delayed or 0)
    return QueueCounts(
      waiting=totals.get(JobState.WAITING.value, 0) - delayed,
      active=totals.get(JobState.ACTIVE.value, 0),
      completed=totals.get(JobState.COMPLETED.value, 0),
      failed=totals.get(JobState.FAILED.value, 0),
      delayed=delayed,
    )

  async def pause(self, queue: str) -> None:
    await self._set_paused(queue, True)

  async def resume(self, queue: str) -> None:
    await self._set_paused(queue, False)

  async def is_paused(self, queue: str) -> bool:
    async with translate_db_errors("is_paused"):
      async with self._session_factory() as session:
        return bool(await session.scalar(select(QueueControl.paused).where(QueueControl.queue == queue)))

  async def clean(self, queue: str, *, completed_before: datetime, failed_before: datetime) -> int:
    stmt = delete(QueueJobRow).where(
      QueueJobRow.queue == queue,
      or_(
        and_(QueueJobRow.state == JobState.COMPLETED.value, QueueJobRow.finished_at < completed_before),
        and_(QueueJobRow.state == JobState.FAILED.value, QueueJobRow.finished_at < failed_before),
      ),
    )
    async with translate_db_errors("clean"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def _set_paused(self, queue: str, paused: bool) -> None:
    stmt = pg_insert(QueueControl).values(queue=queue, paused=paused)
    stmt = stmt.on_conflict_do_update(index_elements=[QueueControl.queue], set_={"paused": paused, "updated_at": func.now()})
    async with translate_db_errors("set_paused"):
      async with self._session_factory() as session:
        await session.execute(stmt)
        await session.commit()

  def _row_to_job(self, row: QueueJobRow, *, stalled: bool = False) -> QueueJob:
    return QueueJob(
      id=str(row.id),
      queue=row.queue,
      name=row.name,
      payload=dict(row.payload or {}),
      priority=int(row.priority),
      state=row.state,
      attempts_made=int(row.attempts_made or 0),
      max_attempts=int(row.max_attempts),
      available_at=row.available_at,
      last_error=row.last_error,
      stalled=stalled,
      stalled_count=int(row.stalled_count or 0),
    )
