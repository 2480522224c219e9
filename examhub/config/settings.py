"""
Settings Configuration

Centralized runtime configuration for the exam engine.
All values are loaded from environment variables (a local .env file is
honoured through python-dotenv).

Values are class attributes read at call time, so a test can monkeypatch
`settings.SUBMISSION_GRACE_SECONDS` without reloading modules.
"""
import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def get_bool_env(key: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ('true', '1', 'yes', 'on', 'enabled')


def get_int_env(key: str, default: int) -> int:
    """Get an integer value from environment variable, falling back on bad input."""
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_list_env(key: str) -> List[str]:
    """Get a comma separated list from environment variable."""
    return [item.strip() for item in os.getenv(key, "").split(",") if item.strip()]


class Settings:
    """
    Runtime settings for the application.

    To add a new setting:
    1. Add it here as a class attribute
    2. Load it from an environment variable
    3. Read it through the shared `settings` instance
    """

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./examhub.db")
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 30)

    # Buffer after the nominal deadline that still accepts a final submit
    SUBMISSION_GRACE_SECONDS: int = get_int_env("SUBMISSION_GRACE_SECONDS", 10)

    EXPIRY_SWEEP_ENABLED: bool = get_bool_env("EXPIRY_SWEEP_ENABLED", False)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = get_int_env("EXPIRY_SWEEP_INTERVAL_SECONDS", 60)

    # Empty secret disables signature verification (local development only)
    PAYMENT_WEBHOOK_SECRET: str = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
    WEBHOOK_RATE_LIMIT: str = os.getenv("WEBHOOK_RATE_LIMIT", "120/minute")

    ALLOWED_ORIGINS: List[str] = get_list_env("ALLOWED_ORIGINS")

    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    def summary(self) -> dict:
        """Non-secret settings, for the health endpoint and CLI."""
        return {
            "environment": self.ENVIRONMENT,
            "submission_grace_seconds": self.SUBMISSION_GRACE_SECONDS,
            "expiry_sweep_enabled": self.EXPIRY_SWEEP_ENABLED,
            "expiry_sweep_interval_seconds": self.EXPIRY_SWEEP_INTERVAL_SECONDS,
            "webhook_signature_required": bool(self.PAYMENT_WEBHOOK_SECRET),
        }


# Global settings instance
settings = Settings()
