"""Storage interfaces for pending notifications, history and invalid tokens."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from pushflow.notifications.contracts import NotificationPayload, Outcome, PendingStatus


@dataclass(frozen=True)
class NewNotification:
  """Validated submission ready to be persisted."""

  device_token: str
  title: str
  body: str
  additional_data: dict[str, str] = field(default_factory=dict)
  notification_type: str = "notification"
  priority: str = "normal"
  scheduled_at: datetime | None = None


@dataclass(frozen=True)
class PendingRecord:
  """Row of the pending_notifications table."""

  id: str
  device_token: str
  title: str
  body: str
  additional_data: dict[str, str]
  notification_type: str
  priority: str
  scheduled_at: datetime
  status: str
  attempts: int
  last_error: str | None
  created_at: datetime | None = None

  def to_payload(self) -> NotificationPayload:
    """Build the queue payload carrying this row's persisted attempt counter."""
    return NotificationPayload(
      id=self.id,
      device_token=self.device_token,
      title=self.title,
      body=self.body,
      additional_data=dict(self.additional_data or {}),
      notification_type=self.notification_type,
      priority=self.priority,
      attempts=self.attempts,
    )


@dataclass(frozen=True)
class HistoryRecord:
  """Immutable terminal outcome row."""

  id: int
  original_id: str | None
  device_token: str
  title: str
  body: str
  additional_data: dict[str, str]
  notification_type: str
  priority: str
  outcome: str
  attempts: int
  provider_response: dict[str, Any] | None
  last_error: str | None
  sent_at: datetime


@dataclass(frozen=True)
class HistoryFilters:
  device_token: str | None = None
  outcome: Outcome | None = None
  date_from: datetime | None = None
  date_to: datetime | None = None
  limit: int = 100


@dataclass(frozen=True)
class TerminalOutcome:
  """Everything written when a notification reaches its final state."""

  outcome: Outcome
  attempts: int
  provider_response: dict[str, Any] | None = None
  last_error: str | None = None
  # Set for token-invalid outcomes; the token is recorded in invalid_tokens.
  invalid_token_reason: str | None = None


class NotificationStore(Protocol):
  """Repository contract for notification persistence."""

  async def insert_pending(self, items: Sequence[NewNotification], *, status: PendingStatus) -> list[PendingRecord]:
    """Insert new pending rows with the given initial status, in input order."""

  async def set_status(self, ids: Sequence[str], status: PendingStatus, *, last_error: str | None = None, increment_attempts: bool = False) -> int:
    """Set the status of many rows in one statement and return the affected count."""

  async def claim_for_delivery(self, notification_id: str, *, reclaim: bool = False) -> bool:
    """Compare-and-set one row from pending to processing.

    With `reclaim` a row already in processing also matches; a redelivered job uses it
    to pick up the row its lost lease had claimed.
    """

  async def claim_due(self, *, now: datetime, limit: int) -> list[PendingRecord]:
    """Atomically flip due pending rows to processing, ordered by priority then scheduled_at."""

  async def release_to_pending(self, ids: Sequence[str]) -> int:
    """Hand processing rows back to pending."""

  async def settle_abandoned(self, ids: Sequence[str], *, last_error: str, max_attempts: int) -> int:
    """Count one attempt against processing rows whose job died, then return them to pending or mark them failed once `max_attempts` is spent."""

  async def reschedule(self, notification_id: str, *, attempts: int, last_error: str | None, scheduled_at: datetime | None = None) -> bool:
    """Reset a row to pending with an updated attempt counter and error."""

  async def record_outcome(self, notification_id: str, outcome: TerminalOutcome) -> bool:
    """Write the history row, delete the pending row and record an invalid token in one transaction.

    History attempts never drop below the row's persisted counter plus the current attempt.
    """

  async def find_invalid_tokens(self, tokens: Sequence[str]) -> set[str]:
    """Return the subset of tokens currently marked invalid."""

  async def list_history(self, filters: HistoryFilters) -> list[HistoryRecord]:
    """Return history rows newest first."""

  async def list_pending(self, *, limit: int = 100) -> list[PendingRecord]:
    """Return rows in status pending ordered by scheduled_at."""

  async def outcome_counts(self, *, since: datetime) -> dict[str, int]:
    """Count history outcomes recorded since a timestamp."""

  async def count_pending(self) -> dict[str, int]:
    """Count pending rows grouped by status."""

  async def requeue_failed(self, ids: Sequence[str] | None = None) -> int:
    """Move failed rows (optionally restricted to ids) back to pending."""

  async def purge_history(self, *, older_than: datetime) -> int:
    """Delete history rows older than a cutoff."""

  async def purge_invalid_tokens(self, *, older_than: datetime) -> int:
    """Delete invalid-token rows older than a cutoff."""
