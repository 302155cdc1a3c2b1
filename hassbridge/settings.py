"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # Allow both field name and alias
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Home Assistant
    ha_url: str = Field(
        default="http://localhost:8123",
        description="Home Assistant instance URL (primary/local)",
        validation_alias=AliasChoices("ha_url", "hass_url", "hass_host"),
    )
    ha_url_remote: str | None = Field(
        default=None,
        description="Home Assistant remote URL (fallback if local fails)",
        validation_alias=AliasChoices("ha_url_remote", "hass_remote_url"),
    )
    ha_token: SecretStr = Field(
        default=SecretStr(""),
        description="Home Assistant long-lived access token",
        validation_alias=AliasChoices("ha_token", "hass_token"),
    )
    ha_url_preference: Literal["auto", "local", "remote"] = Field(
        default="auto",
        description="Which URL to use: 'auto' (local then remote), 'local', or 'remote'",
    )
    ha_timeout: int = Field(default=30, ge=1, le=300, description="REST request timeout")

    # WebSocket protocol client
    ws_connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Seconds allowed for transport open + auth handshake",
    )
    ws_request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Default deadline for a correlated WebSocket response",
    )
    ws_reconnect_max_retries: int = Field(default=5, ge=0, le=50)
    ws_backoff_base: float = Field(default=1.0, ge=0)
    ws_backoff_max: float = Field(default=60.0, ge=0)

    # MLflow (optional tracing; empty = disabled)
    mlflow_tracking_uri: str | None = Field(
        default=None,
        description="MLflow tracking server URI (e.g. sqlite:///mlflow.db)",
    )

    # Registries
    category_scopes: list[str] = Field(
        default=["automation", "script", "scene", "helpers"],
        description="Category registry scopes fetched for the registry join",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
