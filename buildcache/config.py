"""Configuration settings for buildcache.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

A Settings instance is passed explicitly to every component; nothing in
the package reads configuration from module-level state.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildcache.types import TierName

DEFAULT_TIERS = [TierName.LOCAL, TierName.REGISTRY, TierName.LAYER]
DEFAULT_HASH_EXCLUDE = [".git", "node_modules"]


def _default_cache_dir() -> Path:
    """Return the default cache directory."""
    return Path.home() / ".cache" / "buildcache" / "docker"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDCACHE_ prefix.
    List-valued settings are read from the environment as JSON arrays.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDCACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(
        default_factory=_default_cache_dir,
        description="Directory holding local image blobs and the metadata store",
    )
    db_url: str | None = Field(
        default=None,
        description="Metadata store URL (defaults to SQLite inside cache_dir)",
    )

    # Registry tier
    registry_url: str | None = Field(
        default=None,
        description="Registry endpoint, e.g. localhost:5000 (registry tier disabled if unset)",
    )
    registry_repository: str = Field(
        default="buildcache",
        description="Repository inside the registry holding cache tags",
    )
    registry_api_url: str | None = Field(
        default=None,
        description="Base URL of the registry HTTP API (defaults to http://<registry_url>)",
    )
    push_latest: bool = Field(
        default=True,
        description="Also push a 'latest' tag when storing to the registry",
    )

    # Tiers
    tiers: list[TierName] = Field(
        default_factory=lambda: list(DEFAULT_TIERS),
        description="Enabled cache tiers in probe priority order",
    )
    enable_native_cache: bool = Field(
        default=False,
        description="Enable build-tool native caching hints (BuildKit)",
    )

    # Hashing
    hash_exclude: list[str] = Field(
        default_factory=lambda: list(DEFAULT_HASH_EXCLUDE),
        description="Directory names skipped when hashing the build context",
    )
    key_length: int = Field(
        default=16,
        ge=16,
        le=64,
        description="Number of hex characters kept from the SHA-256 digest",
    )

    # Retention
    retention_keep: int = Field(
        default=5,
        ge=0,
        description="Number of newest entries kept by the prune command",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Maximum cache requests processed concurrently",
    )

    # Timeouts (in seconds)
    build_timeout: int = Field(
        default=3600,
        ge=1,
        description="Timeout for a single image build",
    )
    transfer_timeout: int = Field(
        default=1800,
        ge=1,
        description="Timeout for image save/load/pull/push",
    )
    registry_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout for registry HTTP API requests",
    )
    lock_timeout: int = Field(
        default=300,
        ge=1,
        description="Timeout waiting for another process building the same key",
    )

    docker_binary: str = Field(
        default="docker",
        description="Container CLI used to build, save, load, pull and push images",
    )

    @field_validator("tiers", mode="before")
    @classmethod
    def _split_tiers(cls, value: object) -> object:
        """Accept a comma-separated string as well as a list."""
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("tiers")
    @classmethod
    def _unique_tiers(cls, value: list[TierName]) -> list[TierName]:
        """Reject duplicate tier names; order is significant."""
        if len(set(value)) != len(value):
            raise ValueError("tiers must not contain duplicates")
        return value

    @property
    def metadata_url(self) -> str:
        """Effective metadata store URL."""
        if self.db_url:
            return self.db_url
        return f"sqlite:///{self.cache_dir / 'metadata.sqlite'}"

    @property
    def effective_registry_api_url(self) -> str | None:
        """Base URL for the registry HTTP API, if a registry is configured."""
        if self.registry_api_url:
            return self.registry_api_url.rstrip("/")
        if self.registry_url:
            return f"http://{self.registry_url}"
        return None


def get_settings() -> Settings:
    """Build settings from the environment.

    Returns:
        A fresh Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["DEFAULT_HASH_EXCLUDE", "DEFAULT_TIERS", "Settings", "get_settings", "print_settings_json"]
