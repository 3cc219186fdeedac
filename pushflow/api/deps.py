"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from pushflow.notifications.service import NotificationService
from pushflow.services.runtime import NotificationRuntime


def get_runtime(request: Request) -> NotificationRuntime:
  """Return the runtime built by the lifespan hook."""
  runtime = getattr(request.app.state, "runtime", None)
  if runtime is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notification runtime is not initialized")
  return runtime


def get_notification_service(runtime: NotificationRuntime = Depends(get_runtime)) -> NotificationService:  # noqa: B008
  return runtime.service
