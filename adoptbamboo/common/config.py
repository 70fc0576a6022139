from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "adoptbamboo-service"


class ServiceSettings(BaseSettings):
    """Settings for the adoption service and its shared infrastructure."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    kafka_bootstrap_servers: str | None = Field(default=None)
    public_base_url: str = Field(default="http://localhost:3000")
    toyyibpay_secret_key: str = Field(default="")
    toyyibpay_category_code: str = Field(default="")
    toyyibpay_base_url: str = Field(default="https://dev.toyyibpay.com")
    gateway_timeout_seconds: float = Field(default=10.0, gt=0.0)
    gateway_status_cache_ttl_seconds: int = Field(default=15, ge=0)
    admin_emails: list[str] = Field(default_factory=list)
    default_plant_species: str = Field(default="Bambusa vulgaris")

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
