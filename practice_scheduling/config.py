"""
Scheduling Core Configuration

Explicit settings object injected into every component at construction.
Values come from the environment (or a .env file) when built through
get_settings(); tests build CalendarSettings(...) directly.
"""
import logging
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"

DEFAULT_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

REQUIRED_OAUTH_VARIABLES = (
    "GOOGLE_CALENDAR_CLIENT_ID",
    "GOOGLE_CALENDAR_CLIENT_SECRET",
    "GOOGLE_CALENDAR_REDIRECT_URI",
)


class CalendarSettings(BaseSettings):
    """Validated configuration for availability, OAuth and calendar sync."""

    # OAuth client
    GOOGLE_CALENDAR_CLIENT_ID: str = ""
    GOOGLE_CALENDAR_CLIENT_SECRET: str = ""
    GOOGLE_CALENDAR_REDIRECT_URI: str = "http://localhost:3002/api/doctors/calendar/callback"
    GOOGLE_AUTH_URI: str = GOOGLE_AUTH_URI
    GOOGLE_TOKEN_URI: str = GOOGLE_TOKEN_URI
    GOOGLE_CALENDAR_API: str = GOOGLE_CALENDAR_API
    GOOGLE_CALENDAR_SCOPES: List[str] = Field(default_factory=lambda: list(DEFAULT_SCOPES))

    # Remote calls
    REMOTE_CALL_TIMEOUT_SECONDS: float = 10.0
    REMOTE_RETRY_ATTEMPTS: int = 2
    REMOTE_RETRY_DELAY_SECONDS: float = 0.5
    DEFAULT_TOKEN_LIFETIME_SECONDS: int = 3600

    # Sync window and cadence
    SYNC_LOOKBACK_DAYS: int = 30
    SYNC_LOOKAHEAD_DAYS: int = 90
    SYNC_INTERVAL_MINUTES: int = 15
    SYNC_MAX_CONCURRENT_DOCTORS: int = 5

    # Scheduling defaults
    DEFAULT_TIMEZONE: str = "America/Santiago"
    SLOT_STEP_MINUTES: int = 30
    DEFAULT_SLOT_DURATION_MINUTES: int = 60
    REMINDER_OVERRIDE_MINUTES: List[int] = Field(default_factory=lambda: [24 * 60, 2 * 60])

    # Logging
    LOG_LEVEL: str = "INFO"

    # Locks
    REDIS_URL: str = "redis://localhost:6379"
    REFRESH_LOCK_TTL_MS: int = 10000

    # Persistence (optional, only for the Supabase-backed stores)
    SUPABASE_URL: Optional[str] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("REMOTE_CALL_TIMEOUT_SECONDS")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("REMOTE_CALL_TIMEOUT_SECONDS must be positive")
        return v

    @field_validator("REMOTE_RETRY_ATTEMPTS", "SYNC_MAX_CONCURRENT_DOCTORS", "SLOT_STEP_MINUTES")
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v < 1:
            raise ValueError(f"{info.field_name} must be at least 1")
        return v

    @property
    def scope_string(self) -> str:
        return " ".join(self.GOOGLE_CALENDAR_SCOPES)


def missing_oauth_variables(settings: CalendarSettings) -> List[str]:
    """Names of the OAuth client settings that are empty."""
    return [name for name in REQUIRED_OAUTH_VARIABLES if not getattr(settings, name)]


def validate_environment(settings: CalendarSettings) -> bool:
    """
    Check that the OAuth client is configured.

    Note: Never log actual secret values, only variable names.
    """
    missing = missing_oauth_variables(settings)
    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        return False
    return True


_settings: Optional[CalendarSettings] = None


def get_settings() -> CalendarSettings:
    """Get the process-wide settings used by application wiring."""
    global _settings
    if _settings is None:
        _settings = CalendarSettings()
    return _settings
