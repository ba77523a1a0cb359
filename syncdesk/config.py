"""
Configuration Management with Environment Validation

This module provides centralized configuration with strict validation
to prevent silent failures in production.
"""

import logging
import os
from typing import List, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _delays(raw: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    try:
        values = tuple(float(v) for v in raw.split(",") if v.strip())
    except ValueError:
        return default
    return values or default


class Config:
    """
    Application configuration with environment validation.
    Fails fast if critical variables are missing.
    """

    # OAuth2 - REQUIRED for production
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_REDIRECT_URI: str = os.getenv("GOOGLE_REDIRECT_URI", "http://localhost:8000/auth/callback")
    GOOGLE_AUTH_URI: str = "https://accounts.google.com/o/oauth2/auth"
    GOOGLE_TOKEN_URI: str = os.getenv("GOOGLE_TOKEN_URI", "https://oauth2.googleapis.com/token")

    # Token refresh
    TOKEN_EXPIRY_SKEW_SECONDS: int = int(os.getenv("TOKEN_EXPIRY_SKEW_SECONDS", "0"))
    REFRESH_RETRY_DELAYS: Tuple[float, ...] = _delays(os.getenv("REFRESH_RETRY_DELAYS", ""), (0.5, 1.0, 2.0))
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

    # Token encryption at rest (optional in development)
    FERNET_KEY: str = os.getenv("FERNET_KEY", "")

    # Mistral AI
    MISTRAL_API_KEY: str = os.getenv("MISTRAL_API_KEY", "")
    AI_ENABLED: bool = os.getenv("AI_ENABLED", "true").lower() != "false"
    AI_MODEL: str = os.getenv("AI_MODEL", "mistral-small-latest")
    AI_MAX_CHARS: int = int(os.getenv("AI_MAX_CHARS", "2500"))
    AI_TIMEOUT_SECONDS: float = float(os.getenv("AI_TIMEOUT_SECONDS", "20"))

    # Persistence
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY", "")
    DATA_DIR: str = os.getenv("DATA_DIR", "data")

    # IMAP fallback mailbox
    IMAP_HOST: str = os.getenv("IMAP_HOST", "imap.gmail.com")
    IMAP_PORT: int = int(os.getenv("IMAP_PORT", "993"))
    IMAP_USERNAME: str = os.getenv("IMAP_USERNAME", "")
    IMAP_PASSWORD: str = os.getenv("IMAP_PASSWORD", "")
    IMAP_FALLBACK_COUNT: int = int(os.getenv("IMAP_FALLBACK_COUNT", "20"))

    # Mail sync
    MAIL_SYNC_WINDOW_HOURS: int = int(os.getenv("MAIL_SYNC_WINDOW_HOURS", "24"))
    MAIL_SYNC_LIMIT: int = int(os.getenv("MAIL_SYNC_LIMIT", "20"))
    MAIL_FETCH_WORKERS: int = int(os.getenv("MAIL_FETCH_WORKERS", "5"))
    PROVIDER_RETRY_DELAYS: Tuple[float, ...] = _delays(os.getenv("PROVIDER_RETRY_DELAYS", ""), (1.0, 2.0, 4.0))

    # Calendar sync
    CALENDAR_SYNC_DAYS: int = int(os.getenv("CALENDAR_SYNC_DAYS", "3"))

    # Focus-time suggestions (working hours in the user's timezone)
    FOCUS_MINUTES: int = int(os.getenv("FOCUS_MINUTES", "30"))
    FOCUS_DAY_START_HOUR: int = int(os.getenv("FOCUS_DAY_START_HOUR", "9"))
    FOCUS_DAY_END_HOUR: int = int(os.getenv("FOCUS_DAY_END_HOUR", "18"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "text")

    # Environment
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    @classmethod
    def validate(cls) -> List[str]:
        """
        Validate critical environment variables at startup.

        Raises RuntimeError if a required variable is missing in production.
        Returns the list of warnings for optional variables that are not set.
        """
        missing = []
        warnings = []

        if not cls.GOOGLE_CLIENT_ID:
            missing.append("GOOGLE_CLIENT_ID")
        if not cls.GOOGLE_CLIENT_SECRET:
            missing.append("GOOGLE_CLIENT_SECRET")

        if cls.is_production() and not cls.FERNET_KEY:
            missing.append("FERNET_KEY")

        if not cls.MISTRAL_API_KEY:
            warnings.append("MISTRAL_API_KEY (AI enrichment will return placeholders)")
        if not cls.SUPABASE_URL or not cls.SUPABASE_SERVICE_KEY:
            warnings.append("SUPABASE_URL/SUPABASE_SERVICE_KEY (using local JSON store)")
        if not cls.imap_configured():
            warnings.append("IMAP_USERNAME/IMAP_PASSWORD (IMAP fallback disabled)")

        if missing and cls.is_production():
            raise RuntimeError(
                "CRITICAL ERROR: Missing required environment variables: " + ", ".join(missing)
            )

        warnings.extend(f"{var} (OAuth will not work)" for var in missing)
        for warning in warnings:
            logger.warning(f"[CONFIG] Optional environment variable not set: {warning}")
        return warnings

    @classmethod
    def is_production(cls) -> bool:
        """Check if running in production environment."""
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def imap_configured(cls) -> bool:
        return bool(cls.IMAP_HOST and cls.IMAP_USERNAME and cls.IMAP_PASSWORD)

    @classmethod
    def supabase_configured(cls) -> bool:
        return bool(cls.SUPABASE_URL and cls.SUPABASE_SERVICE_KEY)

    @classmethod
    def client_config(cls) -> dict:
        """Client config in the shape google_auth_oauthlib expects."""
        return {
            "web": {
                "client_id": cls.GOOGLE_CLIENT_ID,
                "client_secret": cls.GOOGLE_CLIENT_SECRET,
                "auth_uri": cls.GOOGLE_AUTH_URI,
                "token_uri": cls.GOOGLE_TOKEN_URI,
                "redirect_uris": [cls.GOOGLE_REDIRECT_URI],
            }
        }
