"""Structured logging with provider credential redaction.

Every entry passes through ``secret_sanitizer`` before rendering, so API
keys registered with the shared redactor never reach stderr or the log
file. Output is JSON for log shipping or colored console for terminals.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from collections.abc import Mapping, MutableMapping
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import structlog
from structlog.typing import WrappedLogger

from crm_chat_sync._version import DISTRIBUTION_NAME, __version__
from crm_chat_sync.utils.security import SecretRedactor

if TYPE_CHECKING:
    from crm_chat_sync.config.schema import LoggingConfig

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 7


class LogFormat(StrEnum):
    """Log output format options."""

    JSON = "json"
    CONSOLE = "console"


class LogLevel(StrEnum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_redactor: SecretRedactor | None = None


def get_redactor() -> SecretRedactor:
    """Shared redactor used by the log sanitizer.

    Resolved API keys and the CRM token are registered here so they are
    redacted even though they have no recognizable shape.
    """
    global _redactor
    if _redactor is None:
        _redactor = SecretRedactor(placeholder="[REDACTED]")
    return _redactor


def sanitize_log_value(value: Any) -> Any:
    """Recursively redact secrets from strings inside mappings and sequences."""
    if isinstance(value, str):
        return get_redactor().redact(value)
    if isinstance(value, Mapping):
        return {key: sanitize_log_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(sanitize_log_value(item) for item in value)
    return value


def secret_sanitizer(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor that redacts every value of the event."""
    return cast(MutableMapping[str, Any], sanitize_log_value(event_dict))


def add_service_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", DISTRIBUTION_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


def _renderer(log_format: LogFormat) -> Any:
    if log_format == LogFormat.JSON:
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def _file_handler(path: Path, max_bytes: int, backup_count: int) -> logging.Handler | None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        logging.getLogger("crm_chat_sync.logging").warning(
            "Could not open log file %s, logging to stderr only: %s", path, e
        )
        return None


def configure_logging(
    level: LogLevel | str = LogLevel.INFO,
    log_format: LogFormat | str = LogFormat.JSON,
    file_path: Path | str | None = None,
    file_enabled: bool = False,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
) -> None:
    """Configure structlog and the standard library root logger.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: "json" or "console"
        file_path: Log file, used only when ``file_enabled`` is True
        file_enabled: Also write to a size-rotated file
        max_bytes: Rotate the log file once it reaches this size
        backup_count: Number of rotated files to keep

    Example:
        configure_logging(level="DEBUG", log_format="console")
    """
    level = LogLevel(level.upper()) if isinstance(level, str) else level
    log_format = LogFormat(log_format.lower()) if isinstance(log_format, str) else log_format
    numeric_level = getattr(logging, level.value)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_context,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            secret_sanitizer,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if file_enabled and file_path:
        handler = _file_handler(Path(file_path), max_bytes, backup_count)
        if handler is not None:
            handlers.append(handler)
    for handler in handlers:
        handler.setLevel(numeric_level)

    logging.basicConfig(format="%(message)s", level=numeric_level, handlers=handlers, force=True)


def configure_from_settings(settings: LoggingConfig) -> None:
    """Apply the ``logging`` section of the configuration file."""
    configure_logging(
        level=settings.level,
        log_format=settings.format,
        file_path=settings.file.path,
        file_enabled=settings.file.enabled,
        max_bytes=settings.file.max_bytes,
        backup_count=settings.file.backup_count,
    )


def get_logger(name: str | None = None) -> WrappedLogger:
    return cast(WrappedLogger, structlog.get_logger(name))


def bind_context(**kwargs: Any) -> None:
    """Bind values included in every later log entry of this context.

    Example:
        bind_context(integration_id="42", session="Escritorio01")
        log.info("chats_loaded")  # Includes integration_id and session
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogEventNames:
    """Standard log event names for consistency."""

    # Configuration
    CONFIG_RESOLVING = "config_resolving"
    CONFIG_RESOLVED = "config_resolved"
    CONFIG_RESOLVE_FAILED = "config_resolve_failed"
    SESSION_OVERRIDE_SET = "session_override_set"

    # Chat list
    CHATS_LOADING = "chats_loading"
    CHATS_LOADED = "chats_loaded"
    CHATS_LOAD_FAILED = "chats_load_failed"
    CHAT_FILTERED = "chat_filtered"
    CHAT_ENRICHMENT_FAILED = "chat_enrichment_failed"
    CHATS_PAGE_LOADED = "chats_page_loaded"
    CHATS_REFRESH_FAILED = "chats_refresh_failed"
    PRESENCE_UPDATED = "presence_updated"

    # Message history
    MESSAGES_PAGE_FETCHED = "messages_page_fetched"
    MESSAGES_LOADED = "messages_loaded"
    MESSAGES_LOAD_FAILED = "messages_load_failed"
    MESSAGE_PAGE_LIMIT_REACHED = "message_page_limit_reached"
    DUPLICATE_MESSAGE_ID = "duplicate_message_id"
    OLDER_MESSAGES_LOADED = "older_messages_loaded"

    # Sending
    MESSAGE_SENDING = "message_sending"
    MESSAGE_SENT = "message_sent"
    MESSAGE_SEND_FAILED = "message_send_failed"

    # Session polling
    SESSION_POLLER_STARTED = "session_poller_started"
    SESSION_POLLER_STOPPED = "session_poller_stopped"
    SESSION_STATUS = "session_status"
    SESSION_POLL_FAILED = "session_poll_failed"

    # Store lifecycle
    SYNC_STARTED = "sync_started"
    SYNC_STOPPED = "sync_stopped"
    STALE_RESULT_DISCARDED = "stale_result_discarded"
