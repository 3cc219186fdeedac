"""Runtime context wiring every notification collaborator once per process."""

from __future__ import annotations

from dataclasses import dataclass

from pushflow.config import Settings
from pushflow.jobs.broker import JobBroker
from pushflow.jobs.dispatch import Dispatcher
from pushflow.jobs.models import QueueName, build_queue_policies
from pushflow.jobs.queues import QueueManager
from pushflow.jobs.scheduler import Scheduler
from pushflow.jobs.worker import NotificationWorkers, QueueConsumer
from pushflow.notifications.contracts import PushProvider
from pushflow.notifications.factory import build_delivery_gateway
from pushflow.notifications.gateway import DeliveryGateway
from pushflow.notifications.service import NotificationService
from pushflow.services.maintenance import Maintenance
from pushflow.storage.notifications_repo import NotificationStore
from pushflow.telemetry.observer import JobObserver, LoggingJobObserver


@dataclass(frozen=True)
class NotificationRuntime:
  settings: Settings
  store: NotificationStore
  broker: JobBroker
  queues: QueueManager
  gateway: DeliveryGateway
  dispatcher: Dispatcher
  scheduler: Scheduler
  maintenance: Maintenance
  observer: JobObserver
  service: NotificationService
  workers: NotificationWorkers


def build_runtime(settings: Settings, *, store: NotificationStore | None = None, broker: JobBroker | None = None, provider: PushProvider | None = None, observer: JobObserver | None = None) -> NotificationRuntime:
  """Construct the runtime; store and broker default to the Postgres implementations."""
  if store is None:
    from pushflow.storage.postgres_notifications_repo import PostgresNotificationStore

    store = PostgresNotificationStore()
  if broker is None:
    from pushflow.storage.postgres_queue_repo import PostgresJobBroker

    broker = PostgresJobBroker()

  observer = observer or LoggingJobObserver()
  policies = build_queue_policies(settings)
  queues = QueueManager(broker, policies)
  gateway = build_delivery_gateway(settings, provider=provider)
  dispatcher = Dispatcher(store=store, gateway=gateway, queues=queues, max_attempts=policies[QueueName.SINGLE].max_attempts)
  scheduler = Scheduler(store=store, queues=queues)
  maintenance = Maintenance(store=store, queues=queues)
  service = NotificationService(store=store, queues=queues, gateway=gateway, scheduler=scheduler, maintenance=maintenance)

  registry = dispatcher.registry()
  consumers = [
    QueueConsumer(broker=broker, policy=policy, handler=registry.resolve(queue.value), observer=observer, lease_seconds=settings.job_lease_seconds, poll_interval=settings.poll_interval_seconds, on_dead=dispatcher.settle_dead)
    for queue, policy in policies.items()
  ]
  workers = NotificationWorkers(queues=queues, consumers=consumers, scheduler=scheduler, maintenance=maintenance, sweep_interval=settings.sweep_interval_seconds)

  return NotificationRuntime(
    settings=settings,
    store=store,
    broker=broker,
    queues=queues,
    gateway=gateway,
    dispatcher=dispatcher,
    scheduler=scheduler,
    maintenance=maintenance,
    observer=observer,
    service=service,
    workers=workers,
  )
