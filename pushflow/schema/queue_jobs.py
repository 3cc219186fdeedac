from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pushflow.core.database import Base


class QueueJobRow(Base):
  __tablename__ = "queue_jobs"
  __table_args__ = (
    Index("ix_queue_jobs_claim", "queue", "state", "priority", "available_at"),
    Index("ix_queue_jobs_finished", "queue", "state", "finished_at"),
  )

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  queue: Mapped[str] = mapped_column(String(32), nullable=False)
  name: Mapped[str] = mapped_column(String(64), nullable=False)
  payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
  priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  state: Mapped[str] = mapped_column(String(16), nullable=False, server_default="waiting")
  attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
  stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  max_stalled: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
  backoff_kind: Mapped[str] = mapped_column(String(16), nullable=False, server_default="fixed")
  backoff_delay_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
  available_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  lease_expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  result: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  finished_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class QueueControl(Base):
  __tablename__ = "queue_controls"

  queue: Mapped[str] = mapped_column(String(32), primary_key=True)
  paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
  updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
