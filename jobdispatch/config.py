"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobdispatch.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_EXPONENT,
    DEFAULT_RETRY_OFFSET_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    LONG_RUNNING_THRESHOLD_SECONDS,
    QueueClass,
)


def _default_worker_id() -> str:
    return f"{os.uname().nodename}-{os.getpid()}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Transport
    transport_backend: str = "memory"  # memory or redis
    redis_url: str | None = None
    redis_prefix: str = "jobdispatch"
    transport_connect_retries: int = 5
    transport_retry_backoff_seconds: float = 0.5
    transport_poll_interval_seconds: float = 1.0
    delayed_promote_interval_seconds: float = 0.5
    consumer_heartbeat_ttl_seconds: int = 30

    # Publishing
    publish_batch_size: int = DEFAULT_BATCH_SIZE

    # Jobs
    default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    long_running_threshold_seconds: float = LONG_RUNNING_THRESHOLD_SECONDS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_offset_seconds: float = DEFAULT_RETRY_OFFSET_SECONDS
    retry_exponent: int = DEFAULT_RETRY_EXPONENT

    # Worker Configuration
    worker_id: str = Field(default_factory=_default_worker_id)
    worker_batch_size: int = DEFAULT_BATCH_SIZE
    worker_concurrency_regular: int = 10
    worker_concurrency_long_running: int = 2
    worker_concurrency_retry: int = 4
    worker_concurrency_periodic: int = 1
    worker_shutdown_grace_seconds: float = 30.0
    jobs_module: str | None = None  # imported at startup to register handlers

    # Periodic Scheduler
    scheduler_tick_seconds: float = 1.0
    periodic_claim_ttl_seconds: int = 86400

    # Admin API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "jobdispatch"
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    def concurrency_for(self, queue_class: QueueClass) -> int:
        """Configured number of consumer loops for a queue class."""
        return {
            QueueClass.REGULAR: self.worker_concurrency_regular,
            QueueClass.LONG_RUNNING: self.worker_concurrency_long_running,
            QueueClass.RETRY: self.worker_concurrency_retry,
            QueueClass.PERIODIC: self.worker_concurrency_periodic,
        }.get(queue_class, 0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
