"""
Timezone Utilities

Timezone-aware conversions between UTC and a doctor's local time using ZoneInfo.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Santiago"


def get_zone(timezone_str: str) -> ZoneInfo:
    """
    Resolve a timezone name, falling back to the default zone.

    Args:
        timezone_str: IANA timezone name (e.g., 'America/Santiago')
    """
    try:
        return ZoneInfo(timezone_str)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unsupported timezone: {timezone_str}, using {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def to_local(dt: datetime, timezone_str: str) -> datetime:
    """
    Convert a datetime to the given timezone.

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(get_zone(timezone_str))


def to_rfc3339(dt: datetime) -> str:
    """Format an aware datetime the way the calendar API expects (UTC, 'Z' suffix)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp (accepts the 'Z' suffix)."""
    if not isinstance(value, str):
        raise ValueError(f"Expected an RFC 3339 string, got {type(value).__name__}")
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)
