from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Security
    search_relay_api_secret: str

    # Apify (external scraping provider)
    apify_api_token: str | None = None
    apify_task_id: str | None = None
    apify_base_url: str = "https://api.apify.com/v2"
    http_timeout_seconds: float = 30.0

    # Public URL the provider calls back on (webhook target)
    public_base_url: str = "http://localhost:8000"
    # When set, appended to the webhook URL and checked on delivery
    webhook_secret: str | None = None

    # Admission control
    # Max concurrently outstanding provider jobs. Apify's free plan rate-limits
    # aggressively, keep this low.
    admission_capacity: int = 2
    entry_ttl_seconds: int = 30 * 60
    # Upper bound on stored searches; least recently used finished ones are evicted
    max_cache_entries: int | None = 200
    job_timeout_seconds: int = 5 * 60
    sweep_interval_seconds: float = 30.0
    work_queue_size: int = 100

    # Storage backend: "memory" for single-instance, "neo4j" for shared state
    storage_backend: Literal["memory", "neo4j"] = "memory"
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str | None = None

    # Telemetry (OpenTelemetry -> Axiom)
    axiom_api_token: str | None = None
    axiom_dataset: str = "search-relay"
    axiom_domain: str = "api.axiom.co"
    otel_service_name: str = "search-relay"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
