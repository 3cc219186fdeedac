"""Create notification and queue tables.

Revision ID: 5c1e9a7d3b20
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "5c1e9a7d3b20"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "pending_notifications",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("device_token", sa.Text(), nullable=False),
    sa.Column("title", sa.String(length=200), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("additional_data", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("notification_type", sa.String(length=16), server_default="notification", nullable=False),
    sa.Column("priority", sa.String(length=16), server_default="normal", nullable=False),
    sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
    sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_pending_notifications_due", "pending_notifications", ["status", "scheduled_at"], unique=False)
  op.create_index(op.f("ix_pending_notifications_device_token"), "pending_notifications", ["device_token"], unique=False)

  op.create_table(
    "notification_history",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("original_id", postgresql.UUID(as_uuid=True), nullable=True),
    sa.Column("device_token", sa.Text(), nullable=False),
    sa.Column("title", sa.String(length=200), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("additional_data", postgresql.JSONB(astext_type=sa.Text()), server_default=sa.text("'{}'::jsonb"), nullable=False),
    sa.Column("notification_type", sa.String(length=16), nullable=False),
    sa.Column("priority", sa.String(length=16), nullable=False),
    sa.Column("outcome", sa.String(length=16), nullable=False),
    sa.Column("attempts", sa.Integer(), nullable=False),
    sa.Column("provider_response", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_notification_history_original_id"), "notification_history", ["original_id"], unique=False)
  op.create_index(op.f("ix_notification_history_device_token"), "notification_history", ["device_token"], unique=False)
  op.create_index(op.f("ix_notification_history_outcome"), "notification_history", ["outcome"], unique=False)
  op.create_index(op.f("ix_notification_history_sent_at"), "notification_history", ["sent_at"], unique=False)

  op.create_table(
    "invalid_tokens",
    sa.Column("device_token", sa.Text(), nullable=False),
    sa.Column("reason", sa.Text(), nullable=True),
    sa.Column("marked_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("device_token"),
  )
  op.create_index(op.f("ix_invalid_tokens_marked_at"), "invalid_tokens", ["marked_at"], unique=False)

  op.create_table(
    "queue_jobs",
    sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
    sa.Column("queue", sa.String(length=32), nullable=False),
    sa.Column("name", sa.String(length=64), nullable=False),
    sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("priority", sa.Integer(), server_default="0", nullable=False),
    sa.Column("state", sa.String(length=16), server_default="waiting", nullable=False),
    sa.Column("attempts_made", sa.Integer(), server_default="0", nullable=False),
    sa.Column("max_attempts", sa.Integer(), server_default="1", nullable=False),
    sa.Column("stalled_count", sa.Integer(), server_default="0", nullable=False),
    sa.Column("max_stalled", sa.Integer(), server_default="1", nullable=False),
    sa.Column("backoff_kind", sa.String(length=16), server_default="fixed", nullable=False),
    sa.Column("backoff_delay_seconds", sa.Float(), server_default="0", nullable=False),
    sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("result", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index("ix_queue_jobs_claim", "queue_jobs", ["queue", "state", "priority", "available_at"], unique=False)
  op.create_index("ix_queue_jobs_finished", "queue_jobs", ["queue", "state", "finished_at"], unique=False)

  op.create_table(
    "queue_controls",
    sa.Column("queue", sa.String(length=32), nullable=False),
    sa.Column("paused", sa.Boolean(), server_default=sa.text("false"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.PrimaryKeyConstraint("queue"),
  )


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_table("queue_controls")
  op.drop_index("ix_queue_jobs_finished", table_name="queue_jobs")
  op.drop_index("ix_queue_jobs_claim", table_name="queue_jobs")
  op.drop_table("queue_jobs")
  op.drop_index(op.f("ix_invalid_tokens_marked_at"), table_name="invalid_tokens")
  op.drop_table("invalid_tokens")
  op.drop_index(op.f("ix_notification_history_sent_at"), table_name="notification_history")
  op.drop_index(op.f("ix_notification_history_outcome"), table_name="notification_history")
  op.drop_index(op.f("ix_notification_history_device_token"), table_name="notification_history")
  op.drop_index(op.f("ix_notification_history_original_id"), table_name="notification_history")
  op.drop_table("notification_history")
  op.drop_index(op.f("ix_pending_notifications_device_token"), table_name="pending_notifications")
  op.drop_index("ix_pending_notifications_due", table_name="pending_notifications")
  op.drop_table("pending_notifications")
