"""
Contest engine configuration
Environment variables (or a local .env) override the defaults below.
Money values are integer paise; times are local market time.
"""

import os
from pathlib import Path
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_env_file() -> str | None:
    """ARENA_ENV_FILE if set, else .env in the working directory, else none"""
    explicit = os.environ.get("ARENA_ENV_FILE")
    if explicit:
        return explicit
    return ".env" if Path(".env").exists() else None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All money settings are integer minor units (paise).
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DATABASE_URL: str
    DATABASE_ECHO: bool = False

    # Redis (price cache). Optional: without it quotes come from the static fallback.
    REDIS_URL: str | None = None
    PRICE_SOURCES: list[str] = ["nse", "bse"]
    PRICE_KEY_PREFIX: str = "price"

    # Application URLs
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # CORS
    @property
    def CORS_ORIGINS(self) -> list[str]:
        """Get allowed CORS origins"""
        origins = [self.FRONTEND_URL]
        if self.ENVIRONMENT == "development":
            origins.extend([
                "http://localhost:3000",
                "http://localhost:8000"
            ])
        return origins

    # Admin API (shared secret sent as X-Admin-Key; admin routes are disabled when unset)
    ADMIN_API_KEY: str | None = None

    # Rate Limiting
    RATE_LIMIT_TRADING: str = "30/minute"
    RATE_LIMIT_JOIN: str = "10/minute"

    # Prize pool
    PLATFORM_FEE_PCT: float = 10.0

    # Virtual money tiers (in paise)
    VIRTUAL_MONEY_STANDARD: int = 5000000   # ₹50,000
    VIRTUAL_MONEY_MEGA: int = 7999900       # ₹79,999
    MEGA_CONTEST_THRESHOLD: int = 500       # max_participants at which the mega tier applies

    # Trading defaults for new contests
    DEFAULT_MAX_TRADES_PER_USER: int = 10
    DEFAULT_MAX_OPEN_POSITIONS: int = 3
    DEFAULT_MAX_POSITION_SIZE_PCT: float = 50.0

    # Market hours (contest-local)
    MARKET_TIMEZONE: str = "Asia/Kolkata"
    TRADING_HOURS_START: str = "09:15"
    TRADING_HOURS_END: str = "15:30"
    TRADING_DAYS: list[int] = [0, 1, 2, 3, 4]  # Monday to Friday

    # Real-money wallet
    MIN_WITHDRAWAL: int = 10000  # ₹100

    # Contest scheduler
    SCHEDULER_ENABLED: bool = True
    SWEEP_INTERVAL_SECONDS: int = 60

    @field_validator("PLATFORM_FEE_PCT")
    @classmethod
    def fee_in_range(cls, value: float) -> float:
        if not 0 <= value < 100:
            raise ValueError("PLATFORM_FEE_PCT must be in [0, 100)")
        return value

    @field_validator("MARKET_TIMEZONE")
    @classmethod
    def known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {value}")
        return value

    @field_validator("TRADING_DAYS")
    @classmethod
    def weekdays_only(cls, value: list[int]) -> list[int]:
        if not value or any(d < 0 or d > 6 for d in value):
            raise ValueError("TRADING_DAYS must be weekday numbers 0-6")
        return sorted(set(value))


# Global settings instance
settings = Settings()
