"""Error taxonomy and asyncio helpers shared by the provider adapters and the store.

Provider reads retry only on transient transport failures. HTTP status
errors and sends surface immediately. The store uses ``CancellationToken``
as its liveness flag.
"""

from __future__ import annotations

import asyncio
import builtins
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")

TRANSIENT_TRANSPORT_ERRORS: tuple[type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
)


class SyncError(Exception):
    """Base exception for all synchronization errors."""


class ConfigurationError(SyncError):
    """Provider connection parameters are missing or invalid."""


class ProviderRequestError(SyncError):
    """A provider request failed at the transport or HTTP level.

    Attributes:
        status_code: HTTP status of the failed response, None for network errors.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ChatNotFoundError(ProviderRequestError):
    """The provider does not know the requested chat (HTTP 404)."""


class SessionUnavailableError(ProviderRequestError):
    """The provider session is disconnected and must be re-linked (HTTP 422)."""


class RateLimitError(ProviderRequestError):
    """The provider throttled the request (HTTP 429).

    Attributes:
        retry_after: Seconds from the ``Retry-After`` header, None when absent.
    """

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class TimeoutError(SyncError):
    """A bounded provider call did not finish in time."""


def _log_provider_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    if error is None:
        return
    log.warning(
        "provider_request_retry",
        attempt=retry_state.attempt_number,
        error_type=type(error).__name__,
        error=str(error),
        sleep=retry_state.next_action.sleep if retry_state.next_action else 0,
    )


def create_retry(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 30.0,
    retry_on: tuple[type[Exception], ...] = TRANSIENT_TRANSPORT_ERRORS,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry decorator for idempotent provider reads.

    Args:
        max_attempts: Total attempts, the first call included.
        min_wait: Lower bound of the exponential backoff in seconds.
        max_wait: Upper bound of the exponential backoff in seconds.
        retry_on: Exception types that trigger another attempt.

    The last error is re-raised once attempts run out.
    """
    return retry(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(min=min_wait, max=max_wait),
        before_sleep=_log_provider_retry,
        reraise=True,
    )


async def with_timeout(
    coro: Awaitable[T],
    timeout: float,
    error_message: str | None = None,
) -> T:
    """Await ``coro`` for at most ``timeout`` seconds.

    Raises:
        TimeoutError: The package error, carrying ``error_message`` when given.
    """
    try:
        async with asyncio.timeout(timeout):
            return await coro
    except builtins.TimeoutError as e:
        log.warning("provider_call_timeout", timeout=timeout)
        raise TimeoutError(error_message or f"Provider call timed out after {timeout}s") from e


class CancellationToken:
    """Liveness flag for one start/stop cycle of the synchronization store.

    Fetches are never hard-cancelled. Their completions check the token
    and are dropped once it has been cancelled.
    """

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "live"
        return f"<CancellationToken {state}>"
