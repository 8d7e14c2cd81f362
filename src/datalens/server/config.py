"""
Configuration management for DataLens.

Configuration is loaded from:
1. Environment variables (highest priority)
2. config.yaml file
3. Default values (lowest priority)
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml


class DatabaseSettings(BaseSettings):
    """Database configuration."""

    url: str = "postgresql+asyncpg://localhost/datalens"
    pool_size: int = 5
    max_overflow: int = 10
    pool_recycle: int = 3600  # Recycle connections after 1 hour
    pool_pre_ping: bool = True
    echo: bool = False


class ScanSettings(BaseSettings):
    """Scan orchestration configuration."""

    max_concurrent_per_tenant: int = Field(default=3, ge=1)  # RUNNING scans per tenant
    sample_limit: int = Field(default=10, ge=0)  # Values sampled per field


class DSRSettings(BaseSettings):
    """Data subject request execution configuration."""

    max_concurrency: int = Field(default=5, ge=1)  # Tasks in flight per DSR
    sla_days: int = Field(default=30, ge=1)


class DetectionSettings(BaseSettings):
    """
    Detection engine configuration.

    Weights override the strategies' built-in weights by name. Leaving
    ``enabled_strategies`` unset runs every registered strategy.

    Environment variables:
    - DATALENS_DETECTION__MIN_CONFIDENCE=0.5
    - DATALENS_DETECTION__MULTI_METHOD_BOOST=true
    """

    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    multi_method_boost: bool = False
    weights: dict[str, float] = Field(default_factory=dict)
    enabled_strategies: list[str] | None = None

    @field_validator("weights")
    @classmethod
    def validate_weights(cls, value: dict[str, float]) -> dict[str, float]:
        for name, weight in value.items():
            if not 0.0 < weight <= 1.0:
                raise ValueError(f"Weight for strategy {name!r} must be in (0, 1], got {weight}")
        return value


class TimeoutSettings(BaseSettings):
    """
    Centralized timeout configuration.

    All timeout values in seconds. Configurable via environment variables:
    - DATALENS_TIMEOUTS__CONNECTOR_CALL=30.0
    - DATALENS_TIMEOUTS__SCAN_JOB=7200
    - etc.
    """

    # Connector boundary
    connector_call: float = 30.0  # Any single backend call
    connector_connect: float = 10.0  # Connection establishment

    # Job processing
    scan_job: int = 7200  # Whole discovery run (2 hours)
    dsr_task: int = 1800  # One DSR task (30 min)

    # Polling intervals
    worker_poll: float = 1.0  # Worker job poll interval


class JobSettings(BaseSettings):
    """Job queue configuration."""

    # Retry configuration
    max_retries: int = 3
    retry_base_delay: int = 2  # Seconds
    retry_max_delay: int = 3600  # Cap for exponential backoff

    # Concurrency
    worker_concurrency: int = 4


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_format: bool = False
    file: str | None = None


class MetricsSettings(BaseSettings):
    """Prometheus exporter configuration (worker process)."""

    enabled: bool = False
    port: int = 9108


class S3ConnectorSettings(BaseSettings):
    """Defaults for S3 data sources that do not set their own."""

    region: str = "us-east-1"
    endpoint_url: str | None = None  # MinIO / LocalStack


class GraphConnectorSettings(BaseSettings):
    """Microsoft Graph (OneDrive / Microsoft 365) configuration."""

    base_url: str = "https://graph.microsoft.com/v1.0"
    token_url: str = "https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token"
    max_retries: int = 3


class ConnectorSettings(BaseSettings):
    """All connector configurations."""

    s3: S3ConnectorSettings = Field(default_factory=S3ConnectorSettings)
    graph: GraphConnectorSettings = Field(default_factory=GraphConnectorSettings)


class Settings(BaseSettings):
    """Main settings class that combines all configuration sections."""

    model_config = SettingsConfigDict(
        env_prefix="DATALENS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    scans: ScanSettings = Field(default_factory=ScanSettings)
    dsr: DSRSettings = Field(default_factory=DSRSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    jobs: JobSettings = Field(default_factory=JobSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    connectors: ConnectorSettings = Field(default_factory=ConnectorSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # YAML values arrive as init kwargs; the environment overrides them
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def load_yaml_config(path: Path | None = None) -> dict:
    """Load configuration from YAML file."""
    if path is None:
        candidates = [
            Path("config.yaml"),
            Path("config/config.yaml"),
            Path("/etc/datalens/config.yaml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path and path.exists():
        with open(path) as f:
            return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    yaml_config = load_yaml_config()

    # Environment variables take precedence over YAML values
    return Settings(**yaml_config)


def reload_settings() -> Settings:
    """Force reload of settings (clears cache)."""
    get_settings.cache_clear()
    return get_settings()
