"""Postgres-backed notification store using SQLAlchemy."""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import UTC, datetime

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushflow.core.database import require_session_factory
from pushflow.notifications.contracts import PendingStatus, Priority
from pushflow.schema.notifications import InvalidToken, NotificationHistory, PendingNotification
from pushflow.storage.notifications_repo import HistoryFilters, HistoryRecord, NewNotification, NotificationStore, PendingRecord, TerminalOutcome
from pushflow.utils.db_retry import translate_db_errors

_PRIORITY_RANK = case((PendingNotification.priority == Priority.HIGH.value, 1), else_=0)


def _uuid(value: str) -> uuid.UUID:
  return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _uuids(values: Sequence[str]) -> list[uuid.UUID]:
  return [_uuid(value) for value in values]


def _due_order_key(record: PendingRecord) -> tuple[int, datetime]:
  rank = 1 if record.priority == Priority.HIGH.value else 0
  return (-rank, record.scheduled_at)


class PostgresNotificationStore(NotificationStore):
  """Persist pending rows, history and invalid tokens to Postgres."""

  def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    self._session_factory = session_factory or require_session_factory()

  async def insert_pending(self, items: Sequence[NewNotification], *, status: PendingStatus) -> list[PendingRecord]:
    if not items:
      return []
    now = datetime.now(UTC)
    rows = [
      PendingNotification(
        id=uuid.uuid4(),
        device_token=item.device_token,
        title=item.title,
        body=item.body,
        additional_data=dict(item.additional_data),
        notification_type=item.notification_type,
        priority=item.priority,
        scheduled_at=item.scheduled_at or now,
        status=status.value,
        attempts=0,
        created_at=now,
      )
      for item in items
    ]
    async with translate_db_errors("insert_pending"):
      async with self._session_factory() as session:
        session.add_all(rows)
        await session.commit()
    return [self._pending_to_record(row) for row in rows]

  async def set_status(self, ids: Sequence[str], status: PendingStatus, *, last_error: str | None = None, increment_attempts: bool = False) -> int:
    if not ids:
      return 0
    values: dict = {"status": status.value}
    if last_error is not None:
      values["last_error"] = last_error
    if increment_attempts:
      values["attempts"] = PendingNotification.attempts + 1
    stmt = update(PendingNotification).where(PendingNotification.id.in_(_uuids(ids))).values(**values)
    async with translate_db_errors("set_status"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def claim_for_delivery(self, notification_id: str, *, reclaim: bool = False) -> bool:
    statuses = [PendingStatus.PENDING.value, PendingStatus.PROCESSING.value] if reclaim else [PendingStatus.PENDING.value]
    stmt = (
      update(PendingNotification)
      .where(PendingNotification.id == _uuid(notification_id), PendingNotification.status.in_(statuses))
      .values(status=PendingStatus.PROCESSING.value)
    )
    async with translate_db_errors("claim_for_delivery"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return bool(result.rowcount)

  async def claim_due(self, *, now: datetime, limit: int) -> list[PendingRecord]:
    due = (
      select(PendingNotification.id)
      .where(PendingNotification.status == PendingStatus.PENDING.value, PendingNotification.scheduled_at <= now)
      .order_by(_PRIORITY_RANK.desc(), PendingNotification.scheduled_at.asc())
      .limit(limit)
      .with_for_update(skip_locked=True)
      .cte("due")
    )
    stmt = update(PendingNotification).where(PendingNotification.id.in_(select(due.c.id))).values(status=PendingStatus.PROCESSING.value).returning(PendingNotification)
    async with translate_db_errors("claim_due"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt, execution_options={"synchronize_session": False})).scalars().all()
        records = [self._pending_to_record(row) for row in rows]
        await session.commit()
    # UPDATE ... RETURNING does not preserve the CTE ordering.
    return sorted(records, key=_due_order_key)

  async def release_to_pending(self, ids: Sequence[str]) -> int:
    if not ids:
      return 0
    stmt = (
      update(PendingNotification)
      .where(PendingNotification.id.in_(_uuids(ids)), PendingNotification.status == PendingStatus.PROCESSING.value)
      .values(status=PendingStatus.PENDING.value)
    )
    async with translate_db_errors("release_to_pending"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def settle_abandoned(self, ids: Sequence[str], *, last_error: str, max_attempts: int) -> int:
    if not ids:
      return 0
    next_attempts = PendingNotification.attempts + 1
    next_status = case((next_attempts > max_attempts, PendingStatus.FAILED.value), else_=PendingStatus.PENDING.value)
    stmt = (
      update(PendingNotification)
      .where(PendingNotification.id.in_(_uuids(ids)), PendingNotification.status == PendingStatus.PROCESSING.value)
      .values(status=next_status, attempts=next_attempts, last_error=last_error)
    )
    async with translate_db_errors("settle_abandoned"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def reschedule(self, notification_id: str, *, attempts: int, last_error: str | None, scheduled_at: datetime | None = None) -> bool:
    values: dict = {"status": PendingStatus.PENDING.value, "attempts": attempts, "last_error": last_error}
    if scheduled_at is not None:
      values["scheduled_at"] = scheduled_at
    stmt = update(PendingNotification).where(PendingNotification.id == _uuid(notification_id)).values(**values)
    async with translate_db_errors("reschedule"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return bool(result.rowcount)

  async def record_outcome(self, notification_id: str, outcome: TerminalOutcome) -> bool:
    async with translate_db_errors("record_outcome"):
      async with self._session_factory() as session:
        async with session.begin():
          # Lock the row so a concurrent duplicate job waits, then finds it gone.
          stmt = select(PendingNotification).where(PendingNotification.id == _uuid(notification_id)).with_for_update()
          row = (await session.execute(stmt)).scalar_one_or_none()
          if row is None:
            return False

          session.add(
            NotificationHistory(
              original_id=row.id,
              device_token=row.device_token,
              title=row.title,
              body=row.body,
              additional_data=dict(row.additional_data or {}),
              notification_type=row.notification_type,
              priority=row.priority,
              outcome=outcome.outcome.value,
              attempts=max(outcome.attempts, int(row.attempts or 0) + 1),
              provider_response=outcome.provider_response,
              last_error=outcome.last_error,
            )
          )
          if outcome.invalid_token_reason is not None:
            await session.execute(pg_insert(InvalidToken).values(device_token=row.device_token, reason=outcome.invalid_token_reason).on_conflict_do_nothing(index_elements=[InvalidToken.device_token]))
          await session.delete(row)
    return True

  async def find_invalid_tokens(self, tokens: Sequence[str]) -> set[str]:
    if not tokens:
      return set()
    stmt = select(InvalidToken.device_token).where(InvalidToken.device_token.in_(set(tokens)))
    async with translate_db_errors("find_invalid_tokens"):
      async with self._session_factory() as session:
        return set((await session.execute(stmt)).scalars().all())

  async def list_history(self, filters: HistoryFilters) -> list[HistoryRecord]:
    stmt = select(NotificationHistory)
    if filters.device_token:
      stmt = stmt.where(NotificationHistory.device_token == filters.device_token)
    if filters.outcome:
      stmt = stmt.where(NotificationHistory.outcome == filters.outcome.value)
    if filters.date_from:
      stmt = stmt.where(NotificationHistory.sent_at >= filters.date_from)
    if filters.date_to:
      stmt = stmt.where(NotificationHistory.sent_at <= filters.date_to)
    stmt = stmt.order_by(NotificationHistory.sent_at.desc(), NotificationHistory.id.desc()).limit(filters.limit)
    async with translate_db_errors("list_history"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).scalars().all()
    return [self._history_to_record(row) for row in rows]

  async def list_pending(self, *, limit: int = 100) -> list[PendingRecord]:
    stmt = select(PendingNotification).where(PendingNotification.status == PendingStatus.PENDING.value).order_by(PendingNotification.scheduled_at.asc()).limit(limit)
    async with translate_db_errors("list_pending"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).scalars().all()
    return [self._pending_to_record(row) for row in rows]

  async def outcome_counts(self, *, since: datetime) -> dict[str, int]:
    stmt = select(NotificationHistory.outcome, func.count()).where(NotificationHistory.sent_at >= since).group_by(NotificationHistory.outcome)
    async with translate_db_errors("outcome_counts"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).all()
    return {str(outcome): int(count) for outcome, count in rows}

  async def count_pending(self) -> dict[str, int]:
    stmt = select(PendingNotification.status, func.count()).group_by(PendingNotification.status)
    async with translate_db_errors("count_pending"):
      async with self._session_factory() as session:
        rows = (await session.execute(stmt)).all()
    return {str(status): int(count) for status, count in rows}

  async def requeue_failed(self, ids: Sequence[str] | None = None) -> int:
    stmt = update(PendingNotification).where(PendingNotification.status == PendingStatus.FAILED.value)
    if ids:
      stmt = stmt.where(PendingNotification.id.in_(_uuids(ids)))
    stmt = stmt.values(status=PendingStatus.PENDING.value)
    async with translate_db_errors("requeue_failed"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def purge_history(self, *, older_than: datetime) -> int:
    stmt = delete(NotificationHistory).where(NotificationHistory.sent_at < older_than)
    async with translate_db_errors("purge_history"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  async def purge_invalid_tokens(self, *, older_than: datetime) -> int:
    stmt = delete(InvalidToken).where(InvalidToken.marked_at < older_than)
    async with translate_db_errors("purge_invalid_tokens"):
      async with self._session_factory() as session:
        result = await session.execute(stmt, execution_options={"synchronize_session": False})
        await session.commit()
        return int(result.rowcount or 0)

  def _pending_to_record(self, row: PendingNotification) -> PendingRecord:
    return PendingRecord(
      id=str(row.id),
      device_token=row.device_token,
      title=row.title,
      body=row.body,
      additional_data=dict(row.additional_data or {}),
      notification_type=row.notification_type,
      priority=row.priority,
      scheduled_at=row.scheduled_at,
      status=row.status,
      attempts=int(row.attempts or 0),
      last_error=row.last_error,
      created_at=row.created_at,
    )

  def _history_to_record(self, row: NotificationHistory) -> HistoryRecord:
    return HistoryRecord(
      id=int(row.id),
      original_id=str(row.original_id) if row.original_id else None,
      device_token=row.device_token,
      title=row.title,
      body=row.body,
      additional_data=dict(row.additional_data or {}),
      notification_type=row.notification_type,
      priority=row.priority,
      outcome=row.outcome,
      attempts=int(row.attempts),
      provider_response=row.provider_response,
      last_error=row.last_error,
      sent_at=row.sent_at,
    )
