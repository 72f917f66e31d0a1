"""Configuration management for Reelshelf episode discovery."""

from pydantic import PositiveFloat, PositiveInt, field_validator
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict
from urllib.parse import urlparse


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./episodes.db"

    # Metadata provider (OMDb)
    omdb_api_key: str | None = None
    omdb_base_url: str = "https://www.omdbapi.com/"
    provider_timeout: PositiveInt = 30  # Per-request timeout in seconds

    # TMDB (optional, used as a rating fallback for TTL calculation)
    tmdb_api_key: str | None = None

    # Network settings
    # Proxy configuration in the format http://host:port or socks5://host:port
    proxy: str | None = None

    @field_validator("proxy")
    @classmethod
    def validate_proxy(cls, v: str | None) -> str | None:
        if v is None:
            return v

        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https", "socks4", "socks5", "socks5h"):
            raise ValueError(
                "Proxy must be a valid URL with scheme http/https/socks4/socks5/socks5h"
            )
        if not parsed.netloc:
            raise ValueError("Proxy must have a host and port")
        return v

    # Request scheduler
    scheduler_max_concurrency: PositiveInt = 2
    scheduler_min_delay: float = 0.2  # Seconds between request starts

    @field_validator("scheduler_min_delay")
    @classmethod
    def validate_min_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("scheduler_min_delay must not be negative")
        return v

    # Discovery worker
    worker_interval: PositiveFloat = 5.0
    stuck_job_timeout: PositiveInt = 600  # 10 minutes
    max_job_attempts: PositiveInt = 3
    max_seasons: PositiveInt = 20
    max_consecutive_empty_seasons: PositiveInt = 2
    max_episodes_per_season: PositiveInt = 50
    max_consecutive_episode_failures: PositiveInt = 3

    # Smart cache
    cache_memory_max_entries: PositiveInt = 50
    cache_storage_max_bytes: PositiveInt = 5 * 1024 * 1024
    cache_storage_evict_fraction: PositiveFloat = 0.3
    cache_sweep_interval: PositiveFloat = 600.0
    cache_default_ttl: PositiveFloat = 3600.0  # Seconds, for season reads

    @field_validator("cache_storage_evict_fraction")
    @classmethod
    def validate_evict_fraction(cls, v: float) -> float:
        if v > 1:
            raise ValueError("cache_storage_evict_fraction must be within (0, 1]")
        return v

    # Series TTL
    default_ttl_days: PositiveInt = 7

    # App settings
    debug: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
