"""
Shared configuration management for the Catchment Cache service.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden from the environment with the
    ``CATCHMENT_`` prefix, e.g. ``CATCHMENT_REDIS_DB=3``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CATCHMENT_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Cache backend
    cache_backend: Literal["redis", "memory"] = Field(default="redis")
    redis_url: str = Field(default="redis://localhost:6379")
    redis_db: int = Field(default=2, ge=0)
    cache_ttl_seconds: int = Field(default=12 * 60 * 60, gt=0)
    cache_key_prefix: str = Field(default="mike")
    configure_keyspace_notifications: bool = Field(default=True)
    single_flight: bool = Field(default=True)

    # Upstream MIKE data provider
    mike_api_url: str = Field(default="http://localhost:8090/api")
    mike_request_timeout: float = Field(default=10.0, gt=0)

    # Proactive refresh
    refresh_enabled: bool = Field(default=True)
    refresh_retry_delay_seconds: float = Field(default=5.0, ge=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
