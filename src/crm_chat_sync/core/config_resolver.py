"""Resolution and caching of per-tenant provider connection parameters.

The resolver fetches the integration record once per integration id and
shares a single in-flight fetch between concurrent callers. A failed
fetch is not cached, so the next call retries. A runtime session override
redirects subsequent requests without re-fetching the base record.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from cachetools import LRUCache

from ..models.connection import ConnectionConfig
from ..utils.async_helpers import ConfigurationError
from ..utils.logging import LogEventNames, get_redactor
from .normalizers import as_record, pick_first_non_empty

if TYPE_CHECKING:
    from ..interfaces.config_source import ConfigSource
    from ..utils.security import SecretRedactor

log = structlog.get_logger()

DEFAULT_SESSION_NAME = "default"
RESERVED_ENVIRONMENTS = ("producao", "homologacao")
SESSION_METADATA_KEYS = ("session", "wahaSession", "whatsappSession", "sessionName")


def resolve_session_name(
    raw: Mapping[str, Any],
    default_session: str = DEFAULT_SESSION_NAME,
    reserved_environments: Iterable[str] = RESERVED_ENVIRONMENTS,
) -> str:
    """Pick the session name from an integration record.

    A non-reserved ``environment`` value is the session name; otherwise the
    metadata keys are tried in order, then the default.
    """
    reserved = {env.strip().lower() for env in reserved_environments}

    environment = pick_first_non_empty(raw.get("environment"))
    if environment and environment.lower() not in reserved:
        return environment

    metadata = as_record(raw.get("metadata")) or {}
    from_metadata = pick_first_non_empty(*(metadata.get(key) for key in SESSION_METADATA_KEYS))
    return from_metadata or default_session


def build_connection_config(
    raw: Any,
    default_session: str = DEFAULT_SESSION_NAME,
    reserved_environments: Iterable[str] = RESERVED_ENVIRONMENTS,
) -> ConnectionConfig:
    """Validate an integration record and build a ConnectionConfig.

    Raises:
        ConfigurationError: If the base URL or API key is missing or invalid.
    """
    record = as_record(raw)
    if record is None:
        raise ConfigurationError("Integration config payload must be a JSON object")

    base_url = pick_first_non_empty(record.get("apiUrl"))
    if base_url is None:
        raise ConfigurationError("Provider base URL (apiUrl) is missing")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigurationError(f"Provider base URL must use http or https: {base_url}")

    api_key = pick_first_non_empty(record.get("key"))
    if api_key is None:
        raise ConfigurationError(
            "Provider API key is missing; refusing to send unauthenticated requests"
        )

    return ConnectionConfig(
        base_url=base_url.rstrip("/"),
        api_key=api_key,
        session_name=resolve_session_name(record, default_session, reserved_environments),
    )


class ConfigResolver:
    """Memoized resolver for ConnectionConfig.

    Example:
        resolver = ConfigResolver(IntegrationConfigSource(config.integration))
        connection = await resolver.resolve("42")

        resolver.set_session_override("Escritorio02")
        connection = await resolver.resolve("42")  # same base, new session
    """

    def __init__(
        self,
        source: ConfigSource,
        default_session: str = DEFAULT_SESSION_NAME,
        reserved_environments: Iterable[str] = RESERVED_ENVIRONMENTS,
        redactor: SecretRedactor | None = None,
        cache_size: int = 32,
    ) -> None:
        """Initialize the resolver.

        Args:
            source: Where integration records are fetched from.
            default_session: Session used when the record names none.
            reserved_environments: Environment values that are not session names.
            redactor: Redactor to register resolved API keys with.
            cache_size: Number of integrations kept in the cache.
        """
        self._source = source
        self._default_session = default_session
        self._reserved = tuple(reserved_environments)
        self._redactor = redactor or get_redactor()
        self._cache: LRUCache[str, ConnectionConfig] = LRUCache(maxsize=cache_size)
        self._pending: dict[str, asyncio.Task[ConnectionConfig]] = {}
        self._session_override: str | None = None

    @property
    def session_override(self) -> str | None:
        return self._session_override

    def set_session_override(self, name: str | None) -> None:
        """Redirect subsequent requests to another session, or clear with None."""
        override = name.strip() if isinstance(name, str) else None
        self._session_override = override or None
        log.info(LogEventNames.SESSION_OVERRIDE_SET, session=self._session_override)

    def invalidate(self, integration_id: str | None = None) -> None:
        """Drop cached configs so the next resolve re-fetches."""
        if integration_id is None:
            self._cache.clear()
        else:
            self._cache.pop(integration_id, None)

    async def resolve(self, integration_id: str) -> ConnectionConfig:
        """Return the connection config for an integration.

        Raises:
            ConfigurationError: If the record cannot be fetched or is invalid.
        """
        cached = self._cache.get(integration_id)
        if cached is None:
            cached = await self._resolve_shared(integration_id)
        return self._apply_override(cached)

    async def _resolve_shared(self, integration_id: str) -> ConnectionConfig:
        task = self._pending.get(integration_id)
        if task is None:
            log.debug(LogEventNames.CONFIG_RESOLVING, integration_id=integration_id)
            task = asyncio.create_task(
                self._fetch(integration_id),
                name=f"resolve_config_{integration_id}",
            )
            self._pending[integration_id] = task
            task.add_done_callback(lambda done: self._settle(integration_id, done))

        # A cancelled caller must not cancel the fetch other callers share
        return await asyncio.shield(task)

    def _settle(self, integration_id: str, task: asyncio.Task[ConnectionConfig]) -> None:
        if self._pending.get(integration_id) is task:
            del self._pending[integration_id]
        if task.cancelled() or task.exception() is not None:
            return
        self._cache[integration_id] = task.result()

    async def _fetch(self, integration_id: str) -> ConnectionConfig:
        try:
            raw = await self._source.fetch(integration_id)
            config = build_connection_config(raw, self._default_session, self._reserved)
        except ConfigurationError as e:
            log.error(
                LogEventNames.CONFIG_RESOLVE_FAILED,
                integration_id=integration_id,
                error=str(e),
            )
            raise

        self._redactor.register_secret(config.api_key)
        log.info(
            LogEventNames.CONFIG_RESOLVED,
            integration_id=integration_id,
            base_url=config.base_url,
            session=config.session_name,
        )
        return config

    def _apply_override(self, config: ConnectionConfig) -> ConnectionConfig:
        if self._session_override and self._session_override != config.session_name:
            return dataclasses.replace(config, session_name=self._session_override)
        return config
