"""Abstract interface for user-visible notifications."""

from enum import Enum
from typing import Protocol


class NotificationLevel(Enum):
    """Severity of a user-visible notification."""

    INFO = "info"
    ERROR = "error"


class Notifier(Protocol):
    """Toast-equivalent sink for user-facing outcomes."""

    def notify(self, title: str, description: str, level: NotificationLevel) -> None:
        """
        Show a transient notification.

        Must not raise; the synchronization state is never rolled back
        because a notification failed.
        """
        ...
