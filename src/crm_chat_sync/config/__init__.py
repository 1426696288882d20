"""Configuration loading and validation."""

from .loader import load_config
from .schema import (
    IntegrationConfig,
    LoggingConfig,
    PollingConfig,
    ProviderConfig,
    RetryConfig,
    SyncConfig,
)

__all__ = [
    # Loader
    "load_config",
    # Root config
    "SyncConfig",
    # Sections
    "IntegrationConfig",
    "LoggingConfig",
    "PollingConfig",
    "ProviderConfig",
    "RetryConfig",
]
