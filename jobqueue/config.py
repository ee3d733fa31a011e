"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobqueue.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_WORKER_COUNT,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Job store
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout_seconds: float = 5.0
    queue_key_prefix: str = "background:jobs"

    # Worker Configuration
    worker_id: str | None = None
    worker_count: int = Field(default=DEFAULT_WORKER_COUNT, ge=1)
    worker_poll_interval_ms: int = Field(default=DEFAULT_POLL_INTERVAL_MS, ge=1)
    worker_lease_duration_seconds: int = Field(default=30, ge=1)
    worker_heartbeat_interval_seconds: float = 10.0
    worker_handler_timeout_seconds: float | None = None

    # Reaper Configuration
    reaper_interval_seconds: int = 10
    reaper_batch_size: int = 100

    # Retry policy
    default_max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_backoff_strategy: Literal["none", "fixed", "exponential"] = "none"
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 300.0

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    metrics_enabled: bool = True
    prometheus_port: int = 9090
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "job-queue"

    @property
    def worker_poll_interval_seconds(self) -> float:
        """Poll interval converted to seconds for asyncio.sleep."""
        return self.worker_poll_interval_ms / 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
