"""
Shared configuration management for the Segmentator services.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SEGMENTATOR_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Database
    storage_backend: str = Field(default="postgres", description="postgres or memory")
    postgres_dsn: str = Field(default="postgres://localhost:5432/segmentator")
    db_pool_min_size: int = Field(default=2, ge=1)
    db_pool_max_size: int = Field(default=10, ge=1)
    db_command_timeout: float = Field(default=30.0, gt=0)

    # Reports
    storage_dir: str = Field(default="static/reports")
    report_file_prefix: str = Field(default="report_")
    report_file_ext: str = Field(default=".csv")
    public_base_url: str = Field(default="http://localhost:8000")


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
