from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Supabase / PostgREST backend
    supabase_url: str
    supabase_anon_key: str
    failure_modes_table: str = "failure_modes"
    request_timeout_seconds: float = 15.0

    # Offline store (empty string means offline storage is unsupported)
    offline_db_path: str = ""

    # Rate limiting for failure-mode queries (10 requests per second by default)
    rate_limit_max_requests: int = 10
    rate_limit_window_seconds: float = 1.0

    # In-memory catalogue cache
    cache_ttl_seconds: float = 300.0

    # Connectivity probe (0 = scheduler disabled, signal driven manually)
    connectivity_probe_interval_seconds: float = 0.0
    start_offline: bool = False

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()  # type: ignore[call-arg]  # pyright: ignore[reportCallIssue]
