"""SQLAlchemy models for pending notifications, delivery history and invalid tokens."""

from __future__ import annotations

import datetime
import uuid

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from pushflow.core.database import Base


class PendingNotification(Base):
  """A notification that has not reached a terminal outcome yet."""

  __tablename__ = "pending_notifications"
  __table_args__ = (Index("ix_pending_notifications_due", "status", "scheduled_at"),)

  id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
  device_token: Mapped[str] = mapped_column(Text, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String(200), nullable=False)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  additional_data: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  notification_type: Mapped[str] = mapped_column(String(16), nullable=False, server_default="notification")
  priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="normal")
  scheduled_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
  status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="pending")
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class NotificationHistory(Base):
  """Append-only terminal outcome of a notification."""

  __tablename__ = "notification_history"

  id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
  original_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True, index=True)
  device_token: Mapped[str] = mapped_column(Text, nullable=False, index=True)
  title: Mapped[str] = mapped_column(String(200), nullable=False)
  body: Mapped[str] = mapped_column(Text, nullable=False)
  additional_data: Mapped[dict] = mapped_column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))
  notification_type: Mapped[str] = mapped_column(String(16), nullable=False)
  priority: Mapped[str] = mapped_column(String(16), nullable=False)
  outcome: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
  attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
  provider_response: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
  last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
  sent_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)


class InvalidToken(Base):
  """Device tokens the provider reported as invalid or unregistered."""

  __tablename__ = "invalid_tokens"

  device_token: Mapped[str] = mapped_column(Text, primary_key=True)
  reason: Mapped[str | None] = mapped_column(Text, nullable=True)
  marked_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), index=True)
