# src/core/config.py
from typing import Optional
from pydantic import Field
from pydantic_settings import BaseSettings
import logging


class Settings(BaseSettings):
    """Basic application settings"""
    APP_NAME: str = "Standup Sessions"
    DEBUG: bool = False
    ENV: str = "production"

    # Secret used for token signing, code hashing and email encryption
    SESSION_SECRET: Optional[str] = Field(default=None)

    # Redis settings (RedisService also checks provider-specific variables)
    REDIS_URL: Optional[str] = Field(default=None)
    REDIS_SOCKET_TIMEOUT: float = 5.0

    # Session lifetime
    SESSION_TTL_SECONDS: int = 4 * 60 * 60
    SESSION_TTL_POLICY: str = "fixed"  # "fixed" or "sliding"
    MAX_PARTICIPANTS: int = 20

    # Email verification
    VERIFICATION_CODE_TTL_SECONDS: int = 5 * 60
    EMAIL_TOKEN_TTL_DAYS: int = 30

    # Credentials
    PASSWORD_MIN_LENGTH: int = 8

    # Rate limiting
    RATE_LIMIT_SWEEP_INTERVAL: int = 5 * 60
    GLOBAL_RATE_LIMIT: str = "100/minute"

    # Comma-separated list of allowed browser origins
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }


# Make configuration available as a singleton
settings = Settings()


def validate_required_settings() -> bool:
    """Check that all required settings are present"""
    missing = []

    if not settings.SESSION_SECRET:
        missing.append("SESSION_SECRET")

    if settings.SESSION_TTL_POLICY not in ("fixed", "sliding"):
        missing.append("SESSION_TTL_POLICY (must be 'fixed' or 'sliding')")

    if missing:
        logger = logging.getLogger(__name__)
        logger.warning(f"Missing or invalid environment variables: {', '.join(missing)}")
        logger.warning("Email verification and token signing will be unavailable.")
        return False

    return True
