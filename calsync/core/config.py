# calsync/core/config.py
import secrets
from typing import List, Optional, Union, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Environment settings
    ENVIRONMENT: Literal["development", "testing", "production"] = "development"

    # API settings
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 8  # 8 days

    # Server settings
    SERVER_NAME: str = "localhost"
    SERVER_HOST: str = "http://localhost:8000"

    # CORS settings
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:3000",
    ]

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Logging settings
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None  # Path to log file if file logging is enabled

    # Database settings
    SQLALCHEMY_DATABASE_URI: str = "sqlite:///./calsync.db"

    # JWT settings
    JWT_ALGORITHM: str = "HS256"

    # Fernet key for OAuth tokens at rest; derived from SECRET_KEY when empty
    TOKEN_ENCRYPTION_KEY: str = ""

    # Provider call settings (seconds)
    PROVIDER_TIMEOUT: float = 20.0
    PROVIDER_MAX_RETRIES: int = 3
    PROVIDER_BACKOFF_BASE: float = 1.0
    PROVIDER_BACKOFF_MAX: float = 30.0
    PROVIDER_PAGE_SIZE: int = 250

    # Credential lifecycle
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300

    # Reconciliation
    SYNC_LOCK_TIMEOUT: float = 60.0
    SYNC_DEFAULT_PAST_DAYS: int = 7
    SYNC_DEFAULT_FUTURE_DAYS: int = 90

    # Webhook debounce
    WEBHOOK_DEBOUNCE_SECONDS: float = 5.0
    WEBHOOK_SYNC_PAST_DAYS: int = 1
    WEBHOOK_SYNC_FUTURE_DAYS: int = 30
    WEBHOOK_MAX_RESCHEDULES: int = 3

    # Slot holds
    HOLD_DEFAULT_TTL_SECONDS: int = 90
    HOLD_SWEEP_INTERVAL_SECONDS: float = 5.0

    # ICS feeds
    ICS_FEED_PAST_DAYS: int = 30
    ICS_FEED_FUTURE_DAYS: int = 180
    ICS_UID_DOMAIN: str = "calsync.local"
    ICS_PRODID: str = "-//CalSync//Bookings 1.0//EN"
    ICS_USER_AGENT: str = "CalSync-Calendar/1.0"

    # Google
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Microsoft identity platform
    MICROSOFT_CLIENT_ID: str = ""
    MICROSOFT_CLIENT_SECRET: str = ""
    MICROSOFT_TENANT: str = "common"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )


# Create settings instance
settings = Settings()
