"""Administrative queue routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from pushflow.api.deps import get_notification_service
from pushflow.api.models import RequeueFailedRequest, SweepResponse
from pushflow.notifications.service import NotificationService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/queue-stats")
async def queue_stats(service: NotificationService = Depends(get_notification_service)) -> dict[str, Any]:  # noqa: B008
  stats = await service.stats()
  return stats["queues"]


@router.post("/pause-queues")
async def pause_queues(service: NotificationService = Depends(get_notification_service)) -> dict[str, Any]:  # noqa: B008
  """Pause all queues; each queue reports whether it was paused."""
  results = await service.pause_queues()
  logger.warning("Queues paused by admin request: %s", results)
  return {"paused": results}


@router.post("/resume-queues")
async def resume_queues(service: NotificationService = Depends(get_notification_service)) -> dict[str, Any]:  # noqa: B008
  results = await service.resume_queues()
  logger.info("Queues resumed by admin request: %s", results)
  return {"resumed": results}


@router.post("/clean-queues")
async def clean_queues(service: NotificationService = Depends(get_notification_service)) -> dict[str, Any]:  # noqa: B008
  return {"removed": await service.clean_queues()}


@router.post("/run-sweep", response_model=SweepResponse, response_model_by_alias=True)
async def run_sweep(service: NotificationService = Depends(get_notification_service)) -> SweepResponse:  # noqa: B008
  """Run the scheduled sweep immediately."""
  report = await service.run_scheduled_sweep_now()
  return SweepResponse(processed=report.processed, high_priority=report.high_priority, normal_priority=report.normal_priority)


@router.post("/requeue-failed")
async def requeue_failed(payload: RequeueFailedRequest | None = None, service: NotificationService = Depends(get_notification_service)) -> dict[str, int]:  # noqa: B008
  """Hand failed notifications back to pending for the next sweep."""
  ids = [str(item) for item in payload.ids] if payload and payload.ids else None
  return {"requeued": await service.requeue_failed(ids)}
