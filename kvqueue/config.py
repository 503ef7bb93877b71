"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backing store (Upstash-compatible Redis REST API)
    upstash_redis_rest_url: str = "http://localhost:8079"
    upstash_redis_rest_token: str = "local-dev-token"
    store_timeout_seconds: float = 5.0

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_secret_key: str = "your-secret-key-change-in-production"
    api_algorithm: str = "HS256"
    api_access_token_expire_minutes: int = 30
    cron_secret: str = "change-me-cron-secret"

    # Queue Configuration
    queue_names: list[str] = ["analysis", "email", "credits"]
    drain_max_jobs: int = 10
    drain_time_budget_seconds: float = 25.0
    visibility_timeout_seconds: int = 300
    promote_batch_size: int = 100

    # Dead-letter queue
    dlq_max_retries: int = 3
    dlq_base_delay_ms: int = 30_000
    dlq_max_delay_ms: int = 300_000
    dlq_exponential_backoff: bool = True
    dlq_jitter: bool = True
    dlq_retention_days: int = 7
    dlq_drain_batch_size: int = 50

    # Alert thresholds
    alert_error_rate: float = 0.05
    alert_latency_p95_ms: float = 30_000
    alert_queue_size: int = 100
    alert_dlq_size: int = 10
    alert_low_throughput: int = 10

    # Cache
    cache_default_ttl_seconds: int = 3600
    cache_index_grace_seconds: int = 60

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "kvqueue"
    tracing_enabled: bool = True
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
