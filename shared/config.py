"""
Shared configuration management for the access gating service.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="GATING_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/lms")
    kafka_bootstrap: str = Field(default="localhost:9092")
    progress_service_url: str = Field(default="http://localhost:8020")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4318")


class GatingConfig(BaseConfig):
    """Configuration of the content access gating service."""

    service_name: str = "gating"
    host: str = "0.0.0.0"
    port: int = 8030

    # Backends
    rule_store_backend: Literal["postgres", "memory"] = Field(default="postgres")
    cache_backend: Literal["redis", "memory"] = Field(default="redis")
    progress_backend: Literal["http", "memory"] = Field(default="http")

    # Decision cache
    decision_ttl_seconds: int = Field(default=300, ge=1)

    # Every Rule Store / Progress Oracle read is bounded by this timeout
    upstream_timeout_seconds: float = Field(default=2.0, gt=0)

    # Cache invalidation events
    enable_event_consumer: bool = Field(default=False)
    kafka_group_id: str = Field(default="access-gating")
    progress_topic: str = Field(default="lms.progress.changed")
    rule_topic: str = Field(default="lms.access_control.changed")
    enrollment_topic: str = Field(default="lms.enrollment.changed")


def get_config(**overrides) -> GatingConfig:
    """Get configuration for the gating service."""
    return GatingConfig(**overrides)
