from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Service settings, read from the environment and an optional .env file"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    environment: Environment = Environment.DEVELOPMENT

    # Store
    database_url: str = "sqlite:///./chat_sync.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20
    database_pool_timeout: int = 30

    # Caller identity (bearer JWT, subject = owner id)
    secret_key: str = "change-me"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Request protection
    rate_limit_enabled: bool = True
    redis_url: Optional[str] = None
    cors_origins: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    metrics_enabled: bool = True

    app_name: str = "Chat Sync API"
    app_version: str = "1.0.0"
    app_description: str = "Chat state synchronization service"
    host: str = "0.0.0.0"
    port: int = 8000

    # Chats
    default_chat_title: str = "New chat"
    default_model: str = "gpt-4o-mini"
    chat_title_max_length: int = 255
    max_messages_per_update: int = 1000

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        return value.upper()

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def get_cors_config(self) -> dict:
        return {
            "allow_origins": self.cors_origins,
            "allow_credentials": True,
            "allow_methods": ["GET", "POST", "PUT", "PATCH", "DELETE"],
            "allow_headers": ["Authorization", "Content-Type"],
        }

    def engine_options(self) -> dict:
        """Pool sizing for server databases; SQLite ignores it"""
        if self.is_sqlite:
            return {}
        return {
            "pool_size": self.database_pool_size,
            "max_overflow": self.database_max_overflow,
            "pool_timeout": self.database_pool_timeout,
        }


# Per-environment defaults. Values set explicitly in the environment win.
ENVIRONMENT_OVERRIDES: Dict[Environment, Dict[str, Any]] = {
    Environment.PRODUCTION: {"log_level": "WARNING", "rate_limit_enabled": True, "metrics_enabled": True},
    Environment.STAGING: {"rate_limit_enabled": True},
    Environment.TESTING: {"log_level": "DEBUG", "rate_limit_enabled": False},
    Environment.DEVELOPMENT: {"log_level": "DEBUG", "rate_limit_enabled": False},
}


def apply_environment_overrides(config: Settings) -> Settings:
    for key, value in ENVIRONMENT_OVERRIDES.get(config.environment, {}).items():
        if key not in config.model_fields_set:
            setattr(config, key, value)
    return config


settings = apply_environment_overrides(Settings())
