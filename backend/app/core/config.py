"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.STORE_BACKEND)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Tourist Broadcast Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Storage ──
    STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite:///./broadcasts.db"
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Broadcast validation ──
    TITLE_MIN_LENGTH: int = 3
    BODY_MIN_LENGTH: int = 10

    # ── Dispatch ──
    # Outbound sends in flight per channel, shared by every broadcast
    CHANNEL_CONCURRENCY: Dict[str, int] = {
        "push": 32,
        "email": 8,
        "sms": 8,
        "in_app": 64,
    }
    DELIVERY_MAX_RETRIES: int = 3
    DELIVERY_BACKOFF_BASE_SECONDS: float = 1.0
    DELIVERY_BACKOFF_MAX_SECONDS: float = 30.0

    # ── Scheduler ──
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL_SECONDS: float = 15.0

    # ── Re-notification of unacknowledged recipients (off unless set) ──
    RENOTIFY_INTERVAL_SECONDS: Optional[float] = None
    RENOTIFY_MAX_ATTEMPTS: int = 0

    # ── Channel providers ──
    PUSH_PROVIDER: str = "simulation"  # simulation | http
    PUSH_GATEWAY_URL: Optional[str] = None
    SMS_PROVIDER: str = "simulation"  # simulation | http
    SMS_GATEWAY_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    EMAIL_PROVIDER: str = "simulation"  # simulation | smtp
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    EMAIL_FROM_ADDRESS: str = "broadcasts@tourist-safety.example"
    PROVIDER_TIMEOUT_SECONDS: float = 10.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
