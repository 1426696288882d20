"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

INTEGRATION_ID_PLACEHOLDER = "{integration_id}"


class IntegrationConfig(BaseModel):
    """Where per-tenant provider credentials are fetched from."""

    config_url: str
    integration_id: str
    auth_token: str | None = None
    default_session: str = "default"
    reserved_environments: list[str] = ["producao", "homologacao"]

    @field_validator("config_url")
    @classmethod
    def validate_config_url(cls, v: str) -> str:
        """Require an absolute http(s) URL."""
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("config_url must be an http(s) URL")
        return v

    @field_validator("integration_id", "default_session")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject blank identifiers."""
        v = v.strip()
        if not v:
            raise ValueError("value must not be blank")
        return v

    def config_url_for(self, integration_id: str) -> str:
        """Config URL with an integration id filled in."""
        if INTEGRATION_ID_PLACEHOLDER in self.config_url:
            return self.config_url.replace(INTEGRATION_ID_PLACEHOLDER, integration_id)
        return f"{self.config_url.rstrip('/')}/{integration_id}"


class ProviderConfig(BaseModel):
    """Paging and request settings for the chat provider."""

    chat_page_size: int = Field(50, ge=1, le=500)
    message_page_size: int = Field(100, ge=1, le=1000)
    max_message_pages: int = Field(10, ge=1, le=100)
    download_media: bool = True
    mark_read_hint: int = Field(30, ge=1, le=1000)
    link_preview: bool = True
    request_timeout: float = Field(15.0, gt=0.0, le=300.0)


class PollingConfig(BaseModel):
    """Session status polling configuration."""

    session_interval: float = Field(30.0, gt=0.0, le=3600.0)
    poll_timeout: float = Field(10.0, gt=0.0, le=300.0)
    # 0 disables the periodic chat list refresh
    chats_refresh_interval: float = Field(15.0, ge=0.0, le=3600.0)


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("/var/log/crm-chat-sync/sync.log")
    max_bytes: int = Field(10 * 1024 * 1024, ge=1024)
    backup_count: int = Field(7, ge=0, le=100)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "json"
    file: FileLoggingConfig = FileLoggingConfig()


class RetryConfig(BaseModel):
    """Retry configuration for idempotent provider reads."""

    max_attempts: int = Field(3, ge=1, le=10)
    initial_delay: float = Field(1.0, ge=0.0, le=10.0)
    max_delay: float = Field(30.0, ge=0.0, le=300.0)


class SyncConfig(BaseSettings):
    """Root configuration for CRM Chat Sync."""

    integration: IntegrationConfig
    provider: ProviderConfig = ProviderConfig()
    polling: PollingConfig = PollingConfig()
    logging: LoggingConfig = LoggingConfig()
    retry: RetryConfig = RetryConfig()

    model_config = SettingsConfigDict(
        env_prefix="CRM_CHAT_SYNC_",
        env_file=".env",
        env_nested_delimiter="__",
    )
