"""Configuration management for the classroom progress core."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Database configuration settings."""
    model_config = SettingsConfigDict(env_prefix="DATABASE_", env_file=".env", extra="ignore")

    url: str
    pool_min_size: int = 1
    pool_max_size: int = 10
    command_timeout: float = 30.0

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        """Validate database URL format."""
        if not v or not v.startswith(("postgresql://", "postgres://")):
            raise ValueError("DATABASE_URL must be a valid PostgreSQL connection string")
        if "[PASSWORD]" in v:
            raise ValueError("DATABASE_URL contains placeholder password - please set actual password")
        return v


class AggregationConfig(BaseSettings):
    """Aggregator concurrency and store-call settings."""
    model_config = SettingsConfigDict(env_prefix="AGGREGATION_", env_file=".env", extra="ignore")

    max_concurrent_pairs: int = Field(8, ge=1, le=50)
    store_timeout: float = Field(10.0, gt=0)
    max_retries: int = Field(2, ge=0)
    retry_delay: float = Field(0.5, ge=0)


class FeedConfig(BaseSettings):
    """Change feed reconnection settings."""
    model_config = SettingsConfigDict(env_prefix="FEED_", env_file=".env", extra="ignore")

    connect_timeout: float = Field(10.0, gt=0)
    max_reconnect_attempts: int = Field(5, ge=0)
    reconnect_delay: float = Field(1.0, ge=0)
    max_reconnect_delay: float = Field(30.0, gt=0)
    class_id: Optional[str] = None


class AppConfig(BaseSettings):
    """Application configuration settings."""
    model_config = SettingsConfigDict(env_prefix="APP_", env_file=".env", extra="ignore")

    name: str = "classroom-progress"
    version: str = "0.1.0"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    enforce_roles: bool = Field(False, validation_alias="API_ENFORCE_ROLES")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unsupported log level: {v}")
        return level


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    app: AppConfig = Field(default_factory=AppConfig)

    @classmethod
    def load(cls) -> "Settings":
        """Load settings from environment."""
        return cls()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings

    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings() -> None:
    """Forget cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
