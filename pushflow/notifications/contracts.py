"""Contracts for push notification delivery."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

import msgspec


class NotificationType(StrEnum):
  """Which FCM payload sections a message carries."""

  NOTIFICATION = "notification"
  DATA = "data"
  BOTH = "both"


class Priority(StrEnum):
  NORMAL = "normal"
  HIGH = "high"


class PendingStatus(StrEnum):
  PENDING = "pending"
  PROCESSING = "processing"
  FAILED = "failed"


class Outcome(StrEnum):
  """Terminal outcome written to the history table."""

  SENT = "sent"
  FAILED = "failed"
  INVALID_TOKEN = "invalid_token"


class ErrorClass(StrEnum):
  """Failure taxonomy resolved once at the gateway boundary."""

  TOKEN_INVALID = "token_invalid"
  TRANSIENT = "transient"
  PERMANENT = "permanent"


class ProviderErrorCode(StrEnum):
  """Provider error identifiers understood by the gateway."""

  INVALID_REGISTRATION_TOKEN = "messaging/invalid-registration-token"
  REGISTRATION_TOKEN_NOT_REGISTERED = "messaging/registration-token-not-registered"
  INTERNAL_ERROR = "messaging/internal-error"
  SERVER_UNAVAILABLE = "messaging/server-unavailable"
  TIMEOUT = "messaging/timeout"
  INVALID_ARGUMENT = "messaging/invalid-argument"
  MISMATCHED_CREDENTIAL = "messaging/mismatched-credential"
  MESSAGE_RATE_EXCEEDED = "messaging/message-rate-exceeded"
  THIRD_PARTY_AUTH_ERROR = "messaging/third-party-auth-error"
  UNKNOWN = "messaging/unknown-error"

  @classmethod
  def from_identifier(cls, raw: str | None) -> ProviderErrorCode:
    """Resolve a raw identifier, falling back to UNKNOWN for anything unrecognized."""
    if not raw:
      return cls.UNKNOWN
    try:
      return cls(raw)
    except ValueError:
      return cls.UNKNOWN


@dataclass(frozen=True)
class ErrorClassification:
  """Retry decision for a provider error code."""

  error_class: ErrorClass

  @property
  def token_invalid(self) -> bool:
    return self.error_class is ErrorClass.TOKEN_INVALID

  @property
  def retryable(self) -> bool:
    return self.error_class is ErrorClass.TRANSIENT


@dataclass(frozen=True)
class DisplayPayload:
  title: str
  body: str


@dataclass(frozen=True)
class PushMessage:
  """Provider-neutral message built by the gateway."""

  token: str
  notification: DisplayPayload | None
  data: dict[str, str] | None
  android_priority: str
  apns_priority: str


@dataclass(frozen=True)
class ProviderResponse:
  """Per-message result reported by a provider batch call."""

  success: bool
  message_id: str | None = None
  error_code: ProviderErrorCode | None = None
  error_message: str | None = None


@dataclass(frozen=True)
class DeliveryResult:
  """Outcome of one delivery attempt with the classification already applied."""

  success: bool
  provider_id: str | None = None
  error_code: ProviderErrorCode | None = None
  error_message: str | None = None
  error_class: ErrorClass | None = None

  @property
  def token_invalid(self) -> bool:
    return self.error_class is ErrorClass.TOKEN_INVALID

  @property
  def retryable(self) -> bool:
    return self.error_class is ErrorClass.TRANSIENT

  @property
  def provider_response(self) -> dict[str, str] | None:
    if self.provider_id is None:
      return None
    return {"id": self.provider_id}


class NotificationPayload(msgspec.Struct, kw_only=True):
  """Job payload describing one notification."""

  id: str
  device_token: str
  title: str
  body: str
  additional_data: dict[str, str] = msgspec.field(default_factory=dict)
  notification_type: str = NotificationType.NOTIFICATION.value
  priority: str = Priority.NORMAL.value
  attempts: int = 0
  retry_attempt: int = 0
  original_job_id: str | None = None


class BatchPayload(msgspec.Struct, kw_only=True):
  """Job payload for the batch queue."""

  notifications: list[NotificationPayload]


class NotificationError(Exception):
  """Base class for all notification delivery failures."""


class ProviderError(NotificationError):
  """Exception raised by a provider adapter for a rejected message."""

  def __init__(self, code: ProviderErrorCode, message: str) -> None:
    super().__init__(message)
    self.code = code


class MessageConstructionError(NotificationError, ValueError):
  """Raised when a message cannot be built (for example an unknown notification type)."""


class BatchDeliveryError(NotificationError):
  """Raised when a provider batch call fails as a whole."""


class InfrastructureUnavailableError(NotificationError):
  """Raised when the store or the broker cannot be reached."""


class InvalidDeviceTokenError(NotificationError):
  """Raised when a submission targets a token already marked invalid."""


class NotificationNotFoundError(NotificationError):
  """Raised when a referenced notification row no longer exists."""


class PushProvider(Protocol):
  """Delivery contract for the external push provider."""

  def send(self, message: PushMessage, *, dry_run: bool = False) -> str:
    """Send one message synchronously and return the provider message id."""

  def send_each(self, messages: list[PushMessage]) -> list[ProviderResponse]:
    """Send up to 500 messages and return one ordered response per message."""
