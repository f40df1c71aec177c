"""Configuration module using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUOTA_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Enforcement policy (tier table, limiters, reset time, cache TTLs)
    policy_path: str | None = None  # JSON file; built-in defaults when unset

    # Backends
    counter_backend: str = "memory"  # "memory" or "redis"
    cache_backend: str = "memory"  # "memory" or "redis"
    quota_store_backend: str = "sql"  # "memory" or "sql"

    # Database
    database_url: str = "sqlite:///data/quota.db"
    database_echo: bool = False

    # Redis
    redis_url: str | None = None  # e.g. redis://localhost:6379/0
    redis_prefix: str = "quota:"
    redis_max_connections: int = 10

    # Every store call is bounded by this timeout (seconds)
    store_timeout_seconds: float = 2.0

    # Logging
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    admin_api_key: str | None = None  # Required for /v1/admin routes when set
    http_limiter: str | None = "api"  # Limiter applied to every HTTP request, None = off
    sweeper_enabled: bool = True  # Run the periodic reset sweep in this process


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
