"""Factory helpers for the push delivery stack."""

from __future__ import annotations

import logging

from pushflow.config import Settings
from pushflow.core.firebase import initialize_firebase
from pushflow.notifications.contracts import PushProvider
from pushflow.notifications.gateway import DeliveryGateway
from pushflow.notifications.push_sender import FirebasePushProvider, NullPushProvider

logger = logging.getLogger(__name__)


def build_push_provider(settings: Settings) -> PushProvider:
  """Construct a push provider based on environment configuration."""
  # Push is enabled by default but still needs a Firebase app to send anything.
  if settings.push_enabled and initialize_firebase(settings):
    return FirebasePushProvider()

  logger.warning("Push delivery disabled or unconfigured; using NullPushProvider.")
  return NullPushProvider()


def build_delivery_gateway(settings: Settings, *, provider: PushProvider | None = None) -> DeliveryGateway:
  return DeliveryGateway(provider or build_push_provider(settings))
