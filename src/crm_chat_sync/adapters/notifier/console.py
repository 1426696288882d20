"""Notifier that writes user-facing notifications to a text stream."""

from __future__ import annotations

import sys
from typing import TextIO

import structlog

from ...interfaces.notifier import NotificationLevel

log = structlog.get_logger()


class ConsoleNotifier:
    """Notifier implementation for terminal use.

    Example:
        notifier = ConsoleNotifier()
        notifier.notify("Mensagem enviada", "Olá", NotificationLevel.INFO)
        # [info] Mensagem enviada: Olá
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stderr

    def notify(self, title: str, description: str, level: NotificationLevel) -> None:
        line = f"[{level.value}] {title}"
        if description:
            line = f"{line}: {description}"
        try:
            print(line, file=self._stream, flush=True)
        except OSError as e:
            log.warning("notification_write_failed", title=title, error=str(e))
