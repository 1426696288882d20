"""Periodic session status polling."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from ..models.session import SessionStatus
from ..utils.async_helpers import with_timeout
from ..utils.logging import LogEventNames
from .normalizers import normalize_session_status

if TYPE_CHECKING:
    from ..interfaces.provider import ChatProvider

log = structlog.get_logger()

DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_POLL_TIMEOUT = 10.0


class SessionPoller:
    """Polls the provider session status on a fixed interval.

    The first poll runs immediately on start. A failed or timed-out poll is
    logged and the next tick proceeds as usual. ``stop()`` cancels the
    polling task and waits for it, so no status is delivered afterwards.

    Example:
        poller = SessionPoller(client, on_status=store.apply_session_status)
        poller.start()
        ...
        await poller.stop()
    """

    def __init__(
        self,
        provider: ChatProvider,
        on_status: Callable[[SessionStatus], None],
        interval: float = DEFAULT_POLL_INTERVAL,
        timeout: float = DEFAULT_POLL_TIMEOUT,
        session_name: str | None = None,
    ) -> None:
        """Initialize the poller.

        Args:
            provider: Chat provider to poll.
            on_status: Called with each successfully parsed status.
            interval: Seconds between poll starts.
            timeout: Upper bound in seconds for a single poll.
            session_name: Name used when the payload carries none.
        """
        if interval <= 0 or timeout <= 0:
            raise ValueError("interval and timeout must be positive")
        self._provider = provider
        self._on_status = on_status
        self._interval = interval
        self._timeout = timeout
        self._session_name = session_name
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def session_name(self) -> str | None:
        """Name given to a status payload that carries none."""
        return self._session_name

    @session_name.setter
    def session_name(self, name: str | None) -> None:
        self._session_name = name

    def start(self) -> None:
        """Start polling in a background task."""
        if self.is_running:
            log.warning("session_poller_already_running")
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run(), name="session_poller")
        log.info(LogEventNames.SESSION_POLLER_STARTED, interval=self._interval)

    async def stop(self) -> None:
        """Stop polling; returns once the polling task has finished."""
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        log.info(LogEventNames.SESSION_POLLER_STOPPED)

    async def fetch_status(self) -> SessionStatus | None:
        """Fetch the session status without delivering it.

        Raises:
            ProviderRequestError: If the status request fails.
            TimeoutError: If the request exceeds the poll timeout.
        """
        raw = await with_timeout(
            self._provider.get_session_status(),
            self._timeout,
            f"Session status poll timed out after {self._timeout}s",
        )
        status = normalize_session_status(raw, self._session_name)
        if status is None:
            log.warning("session_status_unparseable")
        return status

    async def poll_once(self) -> SessionStatus | None:
        """Fetch the session status and deliver it unless stopped."""
        status = await self.fetch_status()
        if status is None or self._stopped:
            return None

        log.debug(LogEventNames.SESSION_STATUS, session=status.name, status=status.status)
        self._on_status(status)
        return status

    async def _run(self) -> None:
        while not self._stopped:
            try:
                await self.poll_once()
            except Exception as e:
                log.warning(LogEventNames.SESSION_POLL_FAILED, error=str(e))
            await asyncio.sleep(self._interval)
