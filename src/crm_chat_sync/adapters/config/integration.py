"""CRM integration endpoint adapter for provider connection secrets."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ...config.schema import IntegrationConfig
from ...utils.async_helpers import ConfigurationError

log = structlog.get_logger()


class IntegrationConfigSource:
    """ConfigSource implementation backed by the CRM REST endpoint.

    Example:
        source = IntegrationConfigSource(config.integration)
        record = await source.fetch("42")
        # {"apiUrl": "https://waha.example.com", "key": "...", "environment": "..."}
    """

    def __init__(
        self,
        config: IntegrationConfig,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        """Initialize the config source.

        Args:
            config: Integration endpoint settings.
            http_client: HTTP client to use. If None, one is created and owned.
            timeout: Request timeout in seconds for an owned client.
        """
        self._config = config
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        """Close the HTTP client if this source created it."""
        if self._owns_client:
            await self._http.aclose()

    async def fetch(self, integration_id: str) -> dict[str, Any]:
        """Fetch the connection record for an integration.

        Raises:
            ConfigurationError: On transport failure, non-2xx status or a
                payload that is not a JSON object.
        """
        url = self._config.config_url_for(integration_id)
        headers = {"Accept": "application/json"}
        if self._config.auth_token:
            headers["Authorization"] = f"Bearer {self._config.auth_token}"

        try:
            response = await self._http.get(url, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ConfigurationError(
                f"Integration config request failed with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ConfigurationError(f"Integration config request failed: {e}") from e
        except ValueError as e:
            raise ConfigurationError("Integration config response is not valid JSON") from e

        if not isinstance(data, dict):
            raise ConfigurationError("Integration config response must be a JSON object")

        log.debug("integration_config_fetched", integration_id=integration_id)
        return data
