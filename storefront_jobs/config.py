from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from storefront_jobs.errors import ConfigurationError

_SQLITE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Primary data store (required)
    database_url: str

    # Queue store
    redis_url: str = "redis://localhost:6379"
    redis_connect_timeout: float = 5.0
    redis_max_retries: int = 10
    redis_retry_base_delay: float = 0.05
    redis_retry_max_delay: float = 1.0
    redis_outage_cooldown: float = 5.0
    queue_name: str = "storefront:jobs"

    # Dead-letter list for failed jobs (off unless explicitly enabled)
    dead_letter_enabled: bool = False
    dead_letter_queue_name: str = "storefront:jobs:dead"

    # Worker timing
    worker_poll_timeout: int = Field(default=1, ge=1)
    worker_idle_delay: float = 0.1
    worker_error_backoff: float = 5.0

    # Collaborators
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from: str = "no-reply@storefront.local"
    webhook_forward_url: Optional[str] = None
    http_timeout: float = 10.0

    # Logging Configuration
    log_level: str = "INFO"
    service_name: str = "storefront-jobs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def sqlite_path(self) -> str:
        """Return the SQLite database path encoded in ``database_url``.

        Raises:
            ConfigurationError: If the URL names a non-SQLite backend.
        """
        return sqlite_path_from_url(self.database_url)


def sqlite_path_from_url(url: str) -> str:
    for prefix in _SQLITE_PREFIXES:
        if url.startswith(prefix):
            path = url[len(prefix):]
            if not path:
                raise ConfigurationError("database_url has an empty path")
            return path
    if "://" in url:
        scheme = url.split("://", 1)[0]
        raise ConfigurationError(f"Unsupported database scheme: {scheme}")
    return url


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""
    return Settings()
