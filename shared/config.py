"""
Shared configuration management for the Business Rule Engine.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="RULES_",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistence
    storage_backend: str = Field(default="postgres", description="postgres | memory")
    postgres_dsn: str = Field(default="postgres://localhost:5432/business_rules")
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # Change-data source
    kafka_bootstrap: str = Field(default="localhost:9092")
    change_topic: str = Field(default="school.record_changes")
    consumer_group: str = Field(default="business-rule-engine")
    enable_consumer: bool = Field(default=False)

    # Action sinks
    email_queue_url: str = Field(default="http://localhost:8020")
    data_service_url: str = Field(default="http://localhost:8021")
    action_timeout_seconds: float = Field(default=10.0, gt=0)


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
