"""Push provider implementations."""

from __future__ import annotations

import logging
import uuid

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from pushflow.notifications.contracts import ProviderError, ProviderErrorCode, ProviderResponse, PushMessage, PushProvider

logger = logging.getLogger(__name__)


class FirebasePushProvider(PushProvider):
  """`firebase_admin.messaging` backed provider translating SDK errors into provider codes."""

  def __init__(self, *, app=None) -> None:
    self._app = app

  def send(self, message: PushMessage, *, dry_run: bool = False) -> str:
    """Send one FCM message and return its message id."""
    try:
      return messaging.send(_to_fcm(message), dry_run=dry_run, app=self._app)
    except firebase_exceptions.FirebaseError as exc:
      raise ProviderError(_error_code(exc), str(exc)) from exc

  def send_each(self, messages: list[PushMessage]) -> list[ProviderResponse]:
    """Send a batch of FCM messages and return ordered per-message responses."""
    batch = messaging.send_each([_to_fcm(message) for message in messages], app=self._app)
    responses: list[ProviderResponse] = []
    for item in batch.responses:
      if item.success:
        responses.append(ProviderResponse(success=True, message_id=item.message_id))
        continue
      exc = item.exception
      responses.append(ProviderResponse(success=False, error_code=_error_code(exc), error_message=str(exc) if exc else None))
    return responses


class NullPushProvider(PushProvider):
  """No-op provider used when push delivery is disabled or Firebase is unconfigured."""

  def send(self, message: PushMessage, *, dry_run: bool = False) -> str:
    logger.debug("Push delivery disabled; dropping message dry_run=%s", dry_run)
    return f"null-{uuid.uuid4()}"

  def send_each(self, messages: list[PushMessage]) -> list[ProviderResponse]:
    logger.debug("Push delivery disabled; dropping %d messages", len(messages))
    return [ProviderResponse(success=True, message_id=f"null-{uuid.uuid4()}") for _ in messages]


def _to_fcm(message: PushMessage) -> messaging.Message:
  notification = None
  if message.notification is not None:
    notification = messaging.Notification(title=message.notification.title, body=message.notification.body)

  return messaging.Message(
    token=message.token,
    notification=notification,
    data=message.data or None,
    android=messaging.AndroidConfig(priority=message.android_priority),
    apns=messaging.APNSConfig(headers={"apns-priority": message.apns_priority}),
  )


def _error_code(exc: BaseException | None) -> ProviderErrorCode:
  """Map a firebase_admin exception onto the provider error codes."""
  if exc is None:
    return ProviderErrorCode.UNKNOWN

  # Messaging subclasses first; they derive from the generic firebase error classes.
  if isinstance(exc, messaging.UnregisteredError):
    return ProviderErrorCode.REGISTRATION_TOKEN_NOT_REGISTERED
  if isinstance(exc, messaging.SenderIdMismatchError):
    return ProviderErrorCode.MISMATCHED_CREDENTIAL
  if isinstance(exc, messaging.QuotaExceededError):
    return ProviderErrorCode.MESSAGE_RATE_EXCEEDED
  if isinstance(exc, messaging.ThirdPartyAuthError):
    return ProviderErrorCode.THIRD_PARTY_AUTH_ERROR

  if isinstance(exc, firebase_exceptions.InvalidArgumentError):
    if "registration token" in str(exc).lower():
      return ProviderErrorCode.INVALID_REGISTRATION_TOKEN
    return ProviderErrorCode.INVALID_ARGUMENT
  if isinstance(exc, firebase_exceptions.UnavailableError):
    return ProviderErrorCode.SERVER_UNAVAILABLE
  if isinstance(exc, firebase_exceptions.InternalError):
    return ProviderErrorCode.INTERNAL_ERROR
  if isinstance(exc, firebase_exceptions.DeadlineExceededError):
    return ProviderErrorCode.TIMEOUT

  return ProviderErrorCode.UNKNOWN
