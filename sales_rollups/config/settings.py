"""
Sales Rollup Engine
Centralized Configuration Management

Pydantic settings with environment variable support for the rollup store,
the progress store, the rebuild pipeline and the query planner.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Rollup store (PostgreSQL) configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="sales_rollups", description="Database name")
    user: str = Field(default="rollups", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis configuration (progress store)"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class MonitoringSettings(BaseSettings):
    """Logging and metrics configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    prometheus_port: int = Field(default=9090, alias="PROMETHEUS_PORT", description="Prometheus port")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class PipelineSettings(BaseSettings):
    """Rebuild pipeline configuration"""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    max_concurrency: int = Field(default=8, ge=1, description="Units executed concurrently per stage")
    unit_max_attempts: int = Field(default=3, ge=1, description="Attempts per unit before it is marked failed")
    unit_retry_delay_seconds: float = Field(default=60.0, ge=0, description="Fixed backoff between unit attempts")
    unit_timeout_seconds: float = Field(default=1800.0, gt=0, description="Timeout for a single unit attempt")
    progress_ttl_seconds: int = Field(default=7200, gt=0, description="TTL of published progress blobs")
    progress_key_prefix: str = Field(default="agg_rebuild_progress", description="Progress key prefix")


class PlannerSettings(BaseSettings):
    """Query planner configuration"""

    model_config = SettingsConfigDict(env_prefix="PLANNER_")

    hourly_max_days: int = Field(default=3, ge=0, description="Ranges up to this many days scan hourly")
    daily_max_days: int = Field(default=14, ge=0, description="Ranges up to this many days scan daily")
    max_parallel_queries: int = Field(default=4, ge=1, description="Plan operations executed concurrently")
    clamp_to_today: bool = Field(default=True, description="Clamp range end to the current date")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="sales-rollups", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    planner: PlannerSettings = Field(default_factory=PlannerSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
