"""Abstract interface for per-tenant connection secrets."""

from typing import Any, Protocol


class ConfigSource(Protocol):
    """Fetches the raw connection record for an integration.

    The record is expected to look like
    ``{"apiUrl": ..., "key": ..., "environment": ..., "metadata": {...}}``.
    """

    async def fetch(self, integration_id: str) -> dict[str, Any]:
        """
        Fetch the connection record.

        Raises:
            ConfigurationError: If the record cannot be fetched
        """
        ...
