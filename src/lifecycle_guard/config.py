"""
Configuration for the lifecycle guard service.

Values come from the environment or a local .env file.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service configuration"""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App settings
    app_name: str = "Lifecycle Guard"
    version: str = "1.0.0"
    debug: bool = False
    environment: str = "production"
    log_level: str = "INFO"

    # Security
    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # Database
    database_url: str = "sqlite:///./lifecycle_guard.db"
    database_timeout_seconds: float = 5.0

    # Orders: one ceiling for every order line
    max_item_quantity: int = 100


@lru_cache()
def get_settings() -> Settings:
    return Settings()
