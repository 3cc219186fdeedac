"""Routes for submitting and inspecting push notifications."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from pushflow.api.deps import get_notification_service
from pushflow.api.models import BatchSubmitResponse, HistoryResponse, PendingResponse, SendBatchRequest, SendNotificationRequest, SubmitResponse, TokenValidationResponse, ValidateTokenRequest
from pushflow.notifications.contracts import Outcome
from pushflow.notifications.service import NotificationService
from pushflow.storage.notifications_repo import HistoryFilters

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/send", response_model=SubmitResponse, status_code=status.HTTP_202_ACCEPTED)
async def send_notification(payload: SendNotificationRequest, service: NotificationService = Depends(get_notification_service)) -> SubmitResponse:  # noqa: B008
  """Queue one notification for immediate delivery, or persist it for the scheduled sweep."""
  result = await service.submit(payload.to_new_notification())
  return SubmitResponse(id=result.id, status=result.status)


@router.post("/send-batch", response_model=BatchSubmitResponse, response_model_by_alias=True, status_code=status.HTTP_202_ACCEPTED)
async def send_batch(payload: SendBatchRequest, service: NotificationService = Depends(get_notification_service)) -> BatchSubmitResponse:  # noqa: B008
  result = await service.submit_batch([item.to_new_notification() for item in payload.notifications])
  return BatchSubmitResponse(accepted=result.accepted, rejected_tokens=result.rejected_tokens, ids=result.ids)


@router.get("/history", response_model=list[HistoryResponse])
async def list_history(
  device_token: str | None = Query(None, alias="deviceToken"),  # noqa: B008
  outcome: Outcome | None = Query(None),  # noqa: B008
  date_from: datetime | None = Query(None, alias="from"),  # noqa: B008
  date_to: datetime | None = Query(None, alias="to"),  # noqa: B008
  limit: int = Query(100, ge=1, le=1000),  # noqa: B008
  service: NotificationService = Depends(get_notification_service),  # noqa: B008
) -> list[HistoryResponse]:
  """
  Return terminal delivery outcomes, newest first.

  - **deviceToken**: only this device token.
  - **outcome**: sent, failed or invalid_token.
  - **from** / **to**: bound `sent_at`.
  - **limit**: at most 1000 rows.
  """
  filters = HistoryFilters(device_token=device_token, outcome=outcome, date_from=date_from, date_to=date_to, limit=limit)
  records = await service.list_history(filters)
  return [HistoryResponse.from_record(record) for record in records]


@router.get("/pending", response_model=list[PendingResponse])
async def list_pending(limit: int = Query(100, ge=1, le=1000), service: NotificationService = Depends(get_notification_service)) -> list[PendingResponse]:  # noqa: B008
  records = await service.list_pending(limit=limit)
  return [PendingResponse.from_record(record) for record in records]


@router.get("/stats")
async def notification_stats(service: NotificationService = Depends(get_notification_service)) -> dict[str, Any]:  # noqa: B008
  return await service.stats()


@router.post("/validate-token", response_model=TokenValidationResponse, response_model_by_alias=True)
async def validate_token(payload: ValidateTokenRequest, service: NotificationService = Depends(get_notification_service)) -> TokenValidationResponse:  # noqa: B008
  """Dry-run a message against the provider to check a device token."""
  result = await service.validate_token(payload.token)
  return TokenValidationResponse(valid=result.valid, token_invalid=result.token_invalid, error=result.error)
