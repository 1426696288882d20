"""WAHA chat provider adapter over httpx.

This module implements the ChatProvider protocol for a WAHA
(WhatsApp HTTP API) server. Connection parameters are resolved per
request through the ConfigResolver, so a session override takes effect
on the next call.

Error mapping:
- 404 -> ChatNotFoundError
- 422 -> SessionUnavailableError (session must be re-linked)
- 429 -> RateLimitError
- other non-2xx and network failures -> ProviderRequestError

Only idempotent reads are retried, and only on transport failures.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog

from ...config.schema import ProviderConfig, RetryConfig
from ...utils.async_helpers import (
    ChatNotFoundError,
    ProviderRequestError,
    RateLimitError,
    SessionUnavailableError,
    create_retry,
)

if TYPE_CHECKING:
    from ...core.config_resolver import ConfigResolver
    from ...models.connection import ConnectionConfig

log = structlog.get_logger()

API_KEY_HEADER = "X-Api-Key"

SESSION_RECOVERY_MESSAGE = (
    "A sessão do WhatsApp está desconectada. Reconecte o dispositivo para continuar."
)


def _segment(value: str) -> str:
    return quote(value, safe="@")


def _error_detail(response: httpx.Response) -> str | None:
    """Extract a provider error message from a JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return None
    if isinstance(data, dict):
        for key in ("message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def _retry_after(response: httpx.Response) -> int | None:
    value = response.headers.get("Retry-After")
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


class WahaClient:
    """WAHA adapter implementing the ChatProvider protocol.

    Example:
        resolver = ConfigResolver(IntegrationConfigSource(config.integration))
        async with WahaClient(resolver, "42", config.provider) as client:
            chats = await client.get_chats_overview(limit=50)
    """

    def __init__(
        self,
        resolver: ConfigResolver,
        integration_id: str,
        config: ProviderConfig | None = None,
        retry_config: RetryConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the WAHA client.

        Args:
            resolver: Resolver for connection parameters.
            integration_id: Tenant integration whose credentials are used.
            config: Provider settings. Defaults apply if None.
            retry_config: Retry settings for reads. Defaults apply if None.
            http_client: HTTP client to use. If None, one is created and owned.
        """
        self._resolver = resolver
        self._integration_id = integration_id
        self._config = config or ProviderConfig()
        retry_config = retry_config or RetryConfig()
        self._retry = create_retry(
            max_attempts=retry_config.max_attempts,
            min_wait=retry_config.initial_delay,
            max_wait=retry_config.max_delay,
        )
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._config.request_timeout)

    async def __aenter__(self) -> WahaClient:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._http.aclose()

    async def connection(self) -> ConnectionConfig:
        """Resolve the connection currently in effect."""
        return await self._resolver.resolve(self._integration_id)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = _error_detail(response) or f"HTTP error! status: {status}"
        if status == 404:
            raise ChatNotFoundError(detail, status_code=status)
        if status == 422:
            raise SessionUnavailableError(SESSION_RECOVERY_MESSAGE, status_code=status)
        if status == 429:
            raise RateLimitError(detail, retry_after=_retry_after(response))
        raise ProviderRequestError(detail, status_code=status)

    async def _request(
        self,
        method: str,
        path: Callable[[ConnectionConfig], str],
        *,
        params: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
        retryable: bool = False,
        connection: ConnectionConfig | None = None,
    ) -> Any:
        connection = connection or await self.connection()
        url = f"{connection.base_url}{path(connection)}"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            API_KEY_HEADER: connection.api_key,
        }

        send: Callable[..., Awaitable[httpx.Response]] = self._http.request
        if retryable:
            send = self._retry(send)

        try:
            response = await send(method, url, headers=headers, params=params, json=payload)
        except httpx.TimeoutException as e:
            log.warning("provider_request_timeout", method=method, url=url)
            raise ProviderRequestError(f"Provider request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            log.warning("provider_request_error", method=method, url=url, error=str(e))
            raise ProviderRequestError(f"Provider request failed: {e}") from e

        self._raise_for_status(response)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ProviderRequestError(
                "Provider returned an invalid JSON body",
                status_code=response.status_code,
            ) from e

    async def get_chats_overview(self, limit: int, offset: int = 0) -> list[Any]:
        """Fetch one page of chat overview records."""
        data = await self._request(
            "GET",
            lambda c: f"/api/{_segment(c.session_name)}/chats/overview",
            params={"limit": str(limit), "offset": str(offset)},
            retryable=True,
        )
        return data if isinstance(data, list) else []

    async def get_chat_info(self, chat_id: str) -> dict[str, Any]:
        """Fetch the detailed record for a chat."""
        data = await self._request(
            "GET",
            lambda c: f"/api/{_segment(c.session_name)}/chats/{_segment(chat_id)}",
            retryable=True,
        )
        return data if isinstance(data, dict) else {}

    async def get_chat_messages(
        self,
        chat_id: str,
        limit: int,
        offset: int = 0,
        download_media: bool = False,
    ) -> list[Any]:
        """Fetch one page of a chat's message history."""
        data = await self._request(
            "GET",
            lambda c: f"/api/{_segment(c.session_name)}/chats/{_segment(chat_id)}/messages",
            params={
                "limit": str(limit),
                "offset": str(offset),
                "downloadMedia": "true" if download_media else "false",
            },
            retryable=True,
        )
        return data if isinstance(data, list) else []

    async def send_text(
        self,
        chat_id: str,
        text: str,
        link_preview: bool = True,
    ) -> dict[str, Any]:
        """Send a text message. Never retried automatically.

        The body's session and the request target come from one resolution.
        """
        connection = await self.connection()
        data = await self._request(
            "POST",
            lambda c: "/api/sendText",
            payload={
                "chatId": chat_id,
                "text": text,
                "session": connection.session_name,
                "linkPreview": link_preview,
            },
            connection=connection,
        )
        return data if isinstance(data, dict) else {}

    async def mark_as_read(self, chat_id: str, messages: int = 30) -> None:
        """Mark the latest messages of a chat as read."""
        await self._request(
            "POST",
            lambda c: f"/api/{_segment(c.session_name)}/chats/{_segment(chat_id)}/messages/read",
            params={"messages": str(messages)},
        )

    async def get_session_status(self) -> dict[str, Any]:
        """Fetch the status payload of the session currently in effect.

        A payload without a name is labelled with the queried session.
        """
        connection = await self.connection()
        data = await self._request(
            "GET",
            lambda c: f"/api/sessions/{_segment(c.session_name)}",
            retryable=True,
            connection=connection,
        )
        if not isinstance(data, dict):
            return {}
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            data = {**data, "name": connection.session_name}
        return data
