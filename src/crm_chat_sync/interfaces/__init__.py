"""Protocol definitions for pluggable collaborators."""

from .config_source import ConfigSource
from .notifier import NotificationLevel, Notifier
from .provider import ChatProvider

__all__ = ["ChatProvider", "ConfigSource", "NotificationLevel", "Notifier"]
