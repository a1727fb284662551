"""
Environment configuration and constants.
"""
from typing import Optional
from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables from .env file at module import time
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_title: str = "Usage Metering Service"
    api_version: str = "0.1.0"

    # Database Configuration
    database_url: Optional[str] = None
    db_create_all: bool = False

    # Auth Configuration (tokens are issued by the identity service)
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 60

    # Stripe metered billing
    stripe_secret_key: Optional[str] = None
    max_mode_meter_event_prefix: str = "max_mode_"
    meter_timeout_seconds: float = 5.0
    meter_async: bool = True
    meter_workers: int = 4
    meter_max_pending: int = 1000

    # Usage quota storage
    usage_write_attempts: int = 3
    guest_usage_retention_days: int = 30

    # Application Configuration
    cors_allowed_origins: str = ""
    debug: bool = False
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"  # Ignore extra environment variables that aren't defined in the model


# Global settings instance
settings = Settings()
