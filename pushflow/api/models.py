from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, StrictStr, field_validator

from pushflow.storage.notifications_repo import HistoryRecord, NewNotification, PendingRecord

MAX_TITLE_LENGTH = 200
MAX_BODY_LENGTH = 4000
MAX_BATCH_SIZE = 1000


class SendNotificationRequest(BaseModel):
  """One notification submission.

  `message`, `fcmToken`, `additionalData` and `notificationType` are accepted as input
  names for `body`, `token`, `data` and `type`.
  """

  token: StrictStr = Field(min_length=1, max_length=4096, validation_alias=AliasChoices("token", "fcmToken"), description="Opaque device registration token.")
  title: StrictStr = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
  body: StrictStr = Field(min_length=1, max_length=MAX_BODY_LENGTH, validation_alias=AliasChoices("body", "message"))
  data: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("data", "additionalData"), description="Additional key/value data; non-string values are JSON encoded.")
  type: Literal["notification", "data", "both"] = Field(default="notification", validation_alias=AliasChoices("type", "notificationType"))
  priority: Literal["normal", "high"] = "normal"
  scheduled_at: datetime | None = Field(default=None, alias="scheduledAt", description="Deliver at this time instead of immediately.")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("token")
  @classmethod
  def strip_token(cls, value: str) -> str:
    normalized = value.strip()
    if not normalized:
      raise ValueError("token must not be blank.")
    return normalized

  @field_validator("data")
  @classmethod
  def stringify_data(cls, value: dict[str, Any]) -> dict[str, str]:
    # FCM data payloads only carry strings.
    return {str(key): item if isinstance(item, str) else json.dumps(item) for key, item in value.items()}

  @field_validator("scheduled_at")
  @classmethod
  def assume_utc(cls, value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
      return value.replace(tzinfo=UTC)
    return value

  def to_new_notification(self) -> NewNotification:
    return NewNotification(device_token=self.token, title=self.title, body=self.body, additional_data=dict(self.data), notification_type=self.type, priority=self.priority, scheduled_at=self.scheduled_at)


class SendBatchRequest(BaseModel):
  notifications: list[SendNotificationRequest] = Field(min_length=1, max_length=MAX_BATCH_SIZE)
  model_config = ConfigDict(extra="forbid")


class ValidateTokenRequest(BaseModel):
  token: StrictStr = Field(min_length=1, max_length=4096)
  model_config = ConfigDict(extra="forbid")


class RequeueFailedRequest(BaseModel):
  ids: list[UUID] | None = Field(default=None, max_length=MAX_BATCH_SIZE, description="Restrict to these ids; all failed rows when omitted.")
  model_config = ConfigDict(extra="forbid")


class SubmitResponse(BaseModel):
  id: str
  status: Literal["queued", "scheduled"]


class BatchSubmitResponse(BaseModel):
  accepted: int
  rejected_tokens: list[str] = Field(serialization_alias="rejectedTokens")
  ids: list[str]


class TokenValidationResponse(BaseModel):
  valid: bool
  token_invalid: bool = Field(serialization_alias="tokenInvalid")
  error: str | None = None


class SweepResponse(BaseModel):
  processed: int
  high_priority: int = Field(serialization_alias="highPriority")
  normal_priority: int = Field(serialization_alias="normalPriority")


class PendingResponse(BaseModel):
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
  last_error: str | None = None

  @classmethod
  def from_record(cls, record: PendingRecord) -> PendingResponse:
    return cls(
      id=record.id,
      device_token=record.device_token,
      title=record.title,
      body=record.body,
      additional_data=record.additional_data,
      notification_type=record.notification_type,
      priority=record.priority,
      scheduled_at=record.scheduled_at,
      status=record.status,
      attempts=record.attempts,
      last_error=record.last_error,
    )


class HistoryResponse(BaseModel):
  id: int
  original_id: str | None = None
  device_token: str
  title: str
  body: str
  additional_data: dict[str, str]
  notification_type: str
  priority: str
  outcome: str
  attempts: int
  provider_response: dict[str, Any] | None = None
  last_error: str | None = None
  sent_at: datetime

  @classmethod
  def from_record(cls, record: HistoryRecord) -> HistoryResponse:
    return cls(
      id=record.id,
      original_id=record.original_id,
      device_token=record.device_token,
      title=record.title,
      body=record.body,
      additional_data=record.additional_data,
      notification_type=record.notification_type,
      priority=record.priority,
      outcome=record.outcome,
      attempts=record.attempts,
      provider_response=record.provider_response,
      last_error=record.last_error,
      sent_at=record.sent_at,
    )
