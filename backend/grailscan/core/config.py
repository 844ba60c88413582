"""Application configuration using Pydantic Settings."""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


def _default_data_dir() -> Path:
    """Resolve the default data directory.

    Container deployments mount /config; development always uses backend/data
    regardless of the current working directory.
    """
    if Path("/config").exists():
        return Path("/config")
    # __file__ is backend/grailscan/core/config.py, so go up to backend/ and add data
    return (Path(__file__).parent.parent.parent / "data").resolve()


def json_config_settings_source(
    settings: BaseSettings | None = None,
) -> dict[str, Any]:  # noqa: ANN001
    """Load settings from settings.json file.

    This source has lowest priority - env vars will override JSON values.

    Args:
        settings: The Settings class being constructed (unused).

    Returns:
        Dictionary with setting keys (lowercase) and values from the JSON file.
        Values are Any because JSON deserialization can produce any JSON type.
    """
    # GRAILSCAN_DATA_DIR wins so tests can point at a temporary directory
    data_dir_env = Path(os.environ.get("GRAILSCAN_DATA_DIR", ""))
    if data_dir_env and data_dir_env.exists():
        data_dir = data_dir_env
    else:
        data_dir = _default_data_dir()

    settings_file = data_dir / "config" / "settings.json"

    if not settings_file.exists():
        return {}

    try:
        with settings_file.open("r") as f:
            data = json.load(f)
    except Exception:
        return {}

    if not isinstance(data, dict):
        return {}

    # Nested host block: {"host": {"bind_address": "...", "port": ...}}
    flattened: dict[str, Any] = {}
    host = data.get("host")
    if isinstance(host, dict):
        flattened["host_bind_address"] = host.get("bind_address", "127.0.0.1")
        flattened["host_port"] = host.get("port", 8000)

    for key, value in data.items():
        if key != "host":
            flattened[key] = value

    return {k.lower(): v for k, v in flattened.items()}


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from:
    1. JSON file (settings.json in config directory) - lowest priority
    2. .env file
    3. Environment variables - highest priority (override JSON/.env)

    All settings are prefixed with GRAILSCAN_ (e.g., GRAILSCAN_ENV=production).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GRAILSCAN_",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings sources.

        Priority (lowest to highest):
        1. JSON file (settings.json)
        2. .env file
        3. Environment variables
        4. Init settings (values passed to Settings())
        """
        return (  # type: ignore[return-value]
            json_config_settings_source,
            dotenv_settings,
            env_settings,
            init_settings,
        )

    # Application
    env: Literal["development", "production", "testing"] = Field(
        default="development",
        description="Application environment (development, production, testing)",
    )

    host_bind_address: str = Field(
        default="127.0.0.1",
        description="Host address to bind the server to",
    )

    host_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port number to bind the server to",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level outside development (development always logs at DEBUG)",
    )

    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Base directory for all application data (config, database, cache, logs)",
    )

    # ComicVine (catalog search and issue lookup)
    comicvine_api_key: str | None = Field(
        default=None,
        description="ComicVine API key",
    )
    comicvine_base_url: str = Field(
        default="https://comicvine.gamespot.com/api",
        description="ComicVine API base URL",
    )
    comicvine_rate_limit: int = Field(
        default=40,
        ge=1,
        description="Maximum ComicVine requests per rate limit period",
    )
    comicvine_rate_limit_period: int = Field(
        default=60,
        ge=1,
        description="ComicVine rate limit window in seconds",
    )

    # Vision (AI gateway used by the vision-match service)
    ai_gateway_url: str = Field(
        default="https://ai.gateway.lovable.dev/v1/chat/completions",
        description="OpenAI-compatible chat completions endpoint",
    )
    ai_gateway_api_key: str | None = Field(
        default=None,
        description="Bearer token for the AI gateway",
    )
    vision_model: str = Field(
        default="google/gemini-2.5-flash",
        description="Vision-capable model used for cover comparison and identification",
    )
    vision_max_tokens: int = Field(
        default=500,
        ge=1,
        description="Maximum completion tokens per vision call",
    )
    vision_monthly_limit: int = Field(
        default=0,
        ge=0,
        description="Maximum vision calls per calendar month (0 = unlimited)",
    )
    vision_service_url: str | None = Field(
        default=None,
        description="Remote vision-match endpoint; when unset the in-process service is used",
    )

    # Matching overrides (keys of MatchingConfig)
    matching: dict[str, Any] = Field(
        default_factory=dict,
        description="Overrides for matching thresholds, lookup sets and policies",
    )

    @property
    def config_dir(self) -> Path:
        """Directory for configuration files (settings.json, etc.)."""
        return self.data_dir / "config"

    @property
    def database_dir(self) -> Path:
        """Directory for database files."""
        return self.data_dir / "database"

    @property
    def cache_dir(self) -> Path:
        """Directory for cache files."""
        return self.data_dir / "cache"

    @property
    def logs_dir(self) -> Path:
        """Directory for log files."""
        return self.data_dir / "logs"

    @property
    def database_file(self) -> Path:
        """SQLite database file."""
        return self.database_dir / "grailscan.db"

    @property
    def is_debug(self) -> bool:
        """Check if running in debug/development mode."""
        return self.env == "development"

    def model_post_init(self, __context: object) -> None:
        """Post-initialization: create data directories if they don't exist."""
        self.data_dir = self.data_dir.resolve()

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.database_dir.mkdir(parents=True, exist_ok=True)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings instance.

    Creates and caches the settings instance on first call.
    The cache is cleared when reload_settings() is called.

    Returns:
        Settings instance
    """
    return Settings()


def reload_settings() -> Settings:
    """Reload settings from all sources (JSON, .env, env vars).

    Returns:
        New Settings instance
    """
    get_settings.cache_clear()
    return get_settings()
