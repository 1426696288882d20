"""Utility functions and helpers.

This module provides various utilities for the chat synchronization client:
- security: Secret redaction for provider credentials
- async_helpers: Error taxonomy, retry, timeouts, cancellation
- logging: Structured logging with secret sanitization
"""

from crm_chat_sync.utils.async_helpers import (
    CancellationToken,
    ChatNotFoundError,
    ConfigurationError,
    ProviderRequestError,
    RateLimitError,
    SessionUnavailableError,
    SyncError,
    TimeoutError,
    create_retry,
    with_timeout,
)
from crm_chat_sync.utils.logging import (
    LogEventNames,
    LogFormat,
    LogLevel,
    bind_context,
    clear_context,
    configure_from_settings,
    configure_logging,
    get_logger,
    get_redactor,
    unbind_context,
)
from crm_chat_sync.utils.security import (
    RedactionError,
    SecretRedactor,
    SecurityError,
)

__all__ = [
    # Async helpers
    "CancellationToken",
    "ChatNotFoundError",
    "ConfigurationError",
    # Logging
    "LogEventNames",
    "LogFormat",
    "LogLevel",
    "ProviderRequestError",
    "RateLimitError",
    # Security
    "RedactionError",
    "SecretRedactor",
    "SecurityError",
    "SessionUnavailableError",
    "SyncError",
    "TimeoutError",
    "bind_context",
    "clear_context",
    "configure_from_settings",
    "configure_logging",
    "create_retry",
    "get_logger",
    "get_redactor",
    "unbind_context",
    "with_timeout",
]
