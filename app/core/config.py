"""
Core configuration module using Pydantic Settings.
Loads configuration from environment variables with validation.

The signing secret is mandatory: importing this module without a usable
JWT_SECRET raises, so the service refuses to start.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Values that ship in sample .env files and must never sign real tokens
PLACEHOLDER_SECRETS = {
    "your_secret",
    "secret",
    "changeme",
    "changeme-in-production",
    "jwt_secret",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration
    database_url: str = "sqlite:///./chatty.db"

    # Security Configuration
    jwt_secret: str
    jwt_algorithm: str = "HS256"
    bcrypt_rounds: int = 12

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    # Live channels
    max_channels_per_user: int = 5
    heartbeat_interval_seconds: int = 30
    heartbeat_timeout_seconds: int = 40

    # Application Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    log_json: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("jwt_secret")
    @classmethod
    def reject_placeholder_secret(cls, value: str) -> str:
        if not value.strip() or value.strip().lower() in PLACEHOLDER_SECRETS:
            raise ValueError("JWT_SECRET must be set to a custom value")
        return value


# Global settings instance
settings = Settings()
