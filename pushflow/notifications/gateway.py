"""Delivery gateway between the dispatcher and the push provider."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from starlette.concurrency import run_in_threadpool

from pushflow.notifications.contracts import (
  BatchDeliveryError,
  DeliveryResult,
  DisplayPayload,
  ErrorClass,
  ErrorClassification,
  MessageConstructionError,
  NotificationPayload,
  NotificationType,
  Priority,
  ProviderError,
  ProviderErrorCode,
  ProviderResponse,
  PushMessage,
  PushProvider,
)

logger = logging.getLogger(__name__)

PROVIDER_BATCH_LIMIT = 500

# Every provider code must appear here; unit tests assert the mapping is exhaustive.
_ERROR_CLASSES: dict[ProviderErrorCode, ErrorClass] = {
  ProviderErrorCode.INVALID_REGISTRATION_TOKEN: ErrorClass.TOKEN_INVALID,
  ProviderErrorCode.REGISTRATION_TOKEN_NOT_REGISTERED: ErrorClass.TOKEN_INVALID,
  ProviderErrorCode.INTERNAL_ERROR: ErrorClass.TRANSIENT,
  ProviderErrorCode.SERVER_UNAVAILABLE: ErrorClass.TRANSIENT,
  ProviderErrorCode.TIMEOUT: ErrorClass.TRANSIENT,
  ProviderErrorCode.INVALID_ARGUMENT: ErrorClass.PERMANENT,
  ProviderErrorCode.MISMATCHED_CREDENTIAL: ErrorClass.PERMANENT,
  ProviderErrorCode.MESSAGE_RATE_EXCEEDED: ErrorClass.PERMANENT,
  ProviderErrorCode.THIRD_PARTY_AUTH_ERROR: ErrorClass.PERMANENT,
  ProviderErrorCode.UNKNOWN: ErrorClass.PERMANENT,
}


@dataclass(frozen=True)
class TokenValidation:
  valid: bool
  token_invalid: bool = False
  error: str | None = None


def classify_error(code: ProviderErrorCode) -> ErrorClassification:
  """Map a provider error code to its retry decision."""
  return ErrorClassification(error_class=_ERROR_CLASSES[code])


def _stringify(data: Mapping[str, Any] | None) -> dict[str, str]:
  # FCM data payloads only accept string values.
  if not data:
    return {}
  return {str(key): str(value) for key, value in data.items()}


def build_message(token: str, notification_type: str, title: str, body: str, data: Mapping[str, Any] | None = None, priority: str = Priority.NORMAL.value) -> PushMessage:
  """Build a provider-neutral message for the given notification type."""
  try:
    kind = NotificationType(notification_type)
  except ValueError as exc:
    raise MessageConstructionError(f"Unsupported notification type: {notification_type}") from exc

  high = priority == Priority.HIGH.value
  android_priority = "high" if high else "normal"
  apns_priority = "10" if high else "5"

  if kind is NotificationType.NOTIFICATION:
    return PushMessage(token=token, notification=DisplayPayload(title=title, body=body), data=None, android_priority=android_priority, apns_priority=apns_priority)

  if kind is NotificationType.DATA:
    # Data-only messages carry the display text as keys so the client app can render it.
    payload = {"title": title, "message": body, **_stringify(data)}
    return PushMessage(token=token, notification=None, data=_stringify(payload), android_priority=android_priority, apns_priority=apns_priority)

  return PushMessage(token=token, notification=DisplayPayload(title=title, body=body), data=_stringify(data), android_priority=android_priority, apns_priority=apns_priority)


def _failure(code: ProviderErrorCode, message: str | None) -> DeliveryResult:
  return DeliveryResult(success=False, error_code=code, error_message=message, error_class=classify_error(code).error_class)


def _from_response(response: ProviderResponse) -> DeliveryResult:
  if response.success:
    return DeliveryResult(success=True, provider_id=response.message_id)
  return _failure(response.error_code or ProviderErrorCode.UNKNOWN, response.error_message)


class DeliveryGateway:
  """Sends notification payloads through a push provider and classifies failures."""

  def __init__(self, provider: PushProvider, *, batch_limit: int = PROVIDER_BATCH_LIMIT) -> None:
    self._provider = provider
    self._batch_limit = batch_limit

  def _message_for(self, payload: NotificationPayload) -> PushMessage:
    return build_message(payload.device_token, payload.notification_type, payload.title, payload.body, payload.additional_data, payload.priority)

  async def send(self, payload: NotificationPayload) -> DeliveryResult:
    """Deliver one notification; provider rejections come back as failed results."""
    try:
      message = self._message_for(payload)
    except MessageConstructionError as exc:
      logger.error("Cannot build message for notification %s: %s", payload.id, exc)
      return _failure(ProviderErrorCode.INVALID_ARGUMENT, str(exc))

    try:
      # The provider SDK is blocking; keep it off the event loop.
      message_id = await run_in_threadpool(self._provider.send, message)
    except ProviderError as exc:
      logger.warning("Provider rejected notification %s: code=%s error=%s", payload.id, exc.code.value, exc)
      return _failure(exc.code, str(exc))

    logger.info("Notification %s delivered: %s", payload.id, message_id)
    return DeliveryResult(success=True, provider_id=message_id)

  async def send_batch(self, payloads: Sequence[NotificationPayload]) -> list[DeliveryResult]:
    """Deliver many notifications in provider-sized chunks, one result per input in input order."""
    results: list[DeliveryResult | None] = [None] * len(payloads)
    sendable: list[tuple[int, PushMessage]] = []
    for index, payload in enumerate(payloads):
      try:
        sendable.append((index, self._message_for(payload)))
      except MessageConstructionError as exc:
        results[index] = _failure(ProviderErrorCode.INVALID_ARGUMENT, str(exc))

    for start in range(0, len(sendable), self._batch_limit):
      chunk = sendable[start : start + self._batch_limit]
      messages = [message for _, message in chunk]
      try:
        responses = await run_in_threadpool(self._provider.send_each, messages)
      except Exception as exc:
        raise BatchDeliveryError(f"Provider batch call failed: {exc}") from exc

      if len(responses) != len(messages):
        raise BatchDeliveryError(f"Provider returned {len(responses)} responses for {len(messages)} messages")

      for (index, _), response in zip(chunk, responses, strict=True):
        results[index] = _from_response(response)

    final = [result for result in results if result is not None]
    success_count = sum(1 for result in final if result.success)
    logger.info("Batch delivered: %d succeeded, %d failed", success_count, len(final) - success_count)
    return final

  async def validate_token(self, token: str) -> TokenValidation:
    """Probe a device token with a dry-run data message."""
    message = PushMessage(token=token, notification=None, data={"test": "validation"}, android_priority="normal", apns_priority="5")
    try:
      await run_in_threadpool(self._provider.send, message, dry_run=True)
    except ProviderError as exc:
      return TokenValidation(valid=False, token_invalid=classify_error(exc.code).token_invalid, error=str(exc))
    return TokenValidation(valid=True)
