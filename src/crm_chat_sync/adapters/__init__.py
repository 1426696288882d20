"""Concrete implementations of collaborator interfaces."""

from .config.integration import IntegrationConfigSource
from .notifier.console import ConsoleNotifier
from .provider.waha import WahaClient

__all__ = [
    "ConsoleNotifier",
    "IntegrationConfigSource",
    "WahaClient",
]
