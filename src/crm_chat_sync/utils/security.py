"""Redaction of provider credentials from log output.

WAHA API keys and CRM tokens are opaque strings, so shape-based patterns
alone cannot catch them. Keys resolved at runtime are registered as
literals and matched before the patterns. Redaction fails closed: any
error raises ``RedactionError`` instead of passing text through.
"""

from __future__ import annotations

import re
import threading
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterable

log = structlog.get_logger()

# Registered keys shorter than this are not redacted literally
MIN_LITERAL_SECRET_LENGTH = 6

_SENSITIVE_KEY_PARTS = ("token", "key", "secret", "password", "credential")

CREDENTIAL_PATTERNS: tuple[tuple[str, str], ...] = (
    (
        "credential assignment",
        r"(?i)(x-api-key|api[_-]?key|apikey|secret|token|password)"
        r"[\"']?\s*[=:]\s*[\"']?[\w.~+/-]{8,}",
    ),
    ("bearer token", r"(?i)bearer\s+[\w.~+/-]{8,}=*"),
    ("jwt", r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*"),
    ("database url", r"(?i)(postgres(?:ql)?|mysql|redis)://[^:\s]+:[^@\s]+@[^\s]+"),
)


class SecurityError(Exception):
    """Base exception for security-related errors."""


class RedactionError(SecurityError):
    """Redaction could not be performed."""


def _compile(name: str, pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern)
    except re.error as e:
        log.error("secret_pattern_invalid", pattern_name=name, error=str(e))
        raise RedactionError(f"Invalid secret pattern {name!r}: {e}") from e


class SecretRedactor:
    """Replaces credentials in text with a placeholder.

    Args:
        placeholder: Replacement for every detected secret.
        custom_patterns: Extra ``(regex, name)`` pairs applied after the
            built-in credential patterns.

    Raises:
        RedactionError: If a pattern does not compile.
    """

    def __init__(
        self,
        placeholder: str = "[REDACTED]",
        custom_patterns: Iterable[tuple[str, str]] | None = None,
    ) -> None:
        self.placeholder = placeholder
        extra = [(name, pattern) for pattern, name in custom_patterns or ()]
        self._patterns = [
            _compile(name, pattern) for name, pattern in (*CREDENTIAL_PATTERNS, *extra)
        ]
        self._literals: set[str] = set()
        self._literal_pattern: re.Pattern[str] | None = None
        self._lock = threading.Lock()

    def register_secret(self, value: str) -> None:
        """Redact this exact value from now on, e.g. a resolved API key."""
        value = value.strip()
        if len(value) < MIN_LITERAL_SECRET_LENGTH:
            return
        with self._lock:
            if value in self._literals:
                return
            self._literals.add(value)
            # Longest first so a key containing another key is replaced whole
            ordered = sorted(self._literals, key=len, reverse=True)
            self._literal_pattern = re.compile("|".join(map(re.escape, ordered)))

    def redact(self, text: str) -> str:
        """Return ``text`` with registered keys and credential shapes replaced.

        Raises:
            RedactionError: If redaction fails for any reason.
        """
        if not text:
            return text
        try:
            with self._lock:
                literal_pattern = self._literal_pattern
            if literal_pattern is not None:
                text = literal_pattern.sub(self.placeholder, text)
            for pattern in self._patterns:
                text = pattern.sub(self.placeholder, text)
        except Exception as e:
            log.error("redaction_failed", error_type=type(e).__name__)
            raise RedactionError(f"Redaction failed: {e}") from e
        return text

    def has_secrets(self, text: str) -> bool:
        return bool(text) and self.redact(text) != text


def mask_config_value(key: str, value: str) -> str:
    """Mask a config value for display when its key names a credential.

    Long values keep four characters at each end, short ones become ``***``.
    """
    if not any(part in key.lower() for part in _SENSITIVE_KEY_PARTS):
        return value
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}...{value[-4:]}"
