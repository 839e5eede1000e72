from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding='utf-8',
        case_sensitive=True,
        use_enum_values=True,
        extra='ignore',
    )

    # Application
    APP_NAME: str = Field(default="Accent Relay", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")
    ENVIRONMENT: Environment = Field(default=Environment.DEVELOPMENT, description="Environment")
    DEBUG: bool = Field(default=False, description="Debug mode")

    # Server
    HOST: str = Field(default="0.0.0.0", description="Server host")
    PORT: int = Field(default=4001, description="Server port", ge=1000, le=65535)

    # Logging
    LOG_LEVEL: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    LOG_FORMAT: str = Field(default="text", description="Log format (json|text)")

    # Monitoring
    METRICS_ENABLED: bool = Field(default=True, description="Expose prometheus metrics on /metrics")

    @field_validator('LOG_FORMAT')
    @classmethod
    def validate_log_format(cls, v):
        normalized = (v or "text").lower()
        if normalized not in ("json", "text"):
            raise ValueError('LOG_FORMAT must be "json" or "text"')
        return normalized

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == Environment.PRODUCTION


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily create and cache Settings instance for DI."""
    return Settings()
