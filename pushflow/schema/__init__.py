"""Schema package exports."""

from .notifications import InvalidToken, NotificationHistory, PendingNotification
from .queue_jobs import QueueControl, QueueJobRow

__all__ = ["InvalidToken", "NotificationHistory", "PendingNotification", "QueueControl", "QueueJobRow"]
