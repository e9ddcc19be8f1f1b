"""Application settings using Pydantic Settings for environment-based configuration."""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central configuration for pullstream processes.

    All settings can be overridden via environment variables.
    Prefix is not used to allow standard env var names (e.g., REDIS_URL).
    Consumer tunables live in ConsumerConfig (PULLSTREAM_CONSUMER_ prefix).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    debug: bool = False

    # Redis
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    consumer_group: str = "pullstream_workers"
    topics: Annotated[list[str], NoDecode] = Field(default_factory=list)

    # Producer
    producer_max_stream_length: int = Field(default=100_000, ge=1)

    # Scheduling of the periodic consumer procedures
    pull_interval_seconds: float = Field(default=1.0, gt=0.0, le=3600.0)
    audit_interval_seconds: float = Field(default=30.0, gt=0.0, le=86_400.0)

    # Backoff while Redis is unreachable
    backoff_base_delay: float = Field(default=1.0, gt=0.0)
    backoff_max_delay: float = Field(default=60.0, ge=1.0, le=300.0)

    # Observability
    metrics_port: int = 8000
    tracing_enabled: bool = False
    otel_exporter_otlp_endpoint: str | None = None
    otel_service_name: str = "pullstream"

    @field_validator("topics", mode="before")
    @classmethod
    def _split_topics(cls, value: object) -> object:
        """Accept TOPICS as a comma-separated string."""
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are loaded only once.
    Clear cache with get_settings.cache_clear() if needed.
    """
    return Settings()
