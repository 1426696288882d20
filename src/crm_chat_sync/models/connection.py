"""Provider connection parameters."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ConnectionConfig:
    """Resolved per-tenant connection to the WhatsApp-bridging provider."""

    base_url: str
    api_key: str
    session_name: str
