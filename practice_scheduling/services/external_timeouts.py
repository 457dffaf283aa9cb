"""
Timeout configuration for remote calendar and OAuth calls.

Usage:
    from practice_scheduling.services.external_timeouts import calendar_timeout

    async with httpx.AsyncClient(timeout=calendar_timeout(settings)) as client:
        response = await client.get(url)
"""
import httpx

from practice_scheduling.config import CalendarSettings

# OAuth token endpoint - small payloads, should answer quickly
OAUTH_CONNECT_TIMEOUT = 5.0

# Calendar API - generally responsive, list calls can page
CALENDAR_CONNECT_TIMEOUT = 5.0


def calendar_timeout(settings: CalendarSettings) -> httpx.Timeout:
    """Per-request timeout for calendar API calls."""
    return httpx.Timeout(
        settings.REMOTE_CALL_TIMEOUT_SECONDS,
        connect=min(CALENDAR_CONNECT_TIMEOUT, settings.REMOTE_CALL_TIMEOUT_SECONDS),
    )


def oauth_timeout(settings: CalendarSettings) -> httpx.Timeout:
    """Per-request timeout for the OAuth token endpoint."""
    return httpx.Timeout(
        settings.REMOTE_CALL_TIMEOUT_SECONDS,
        connect=min(OAUTH_CONNECT_TIMEOUT, settings.REMOTE_CALL_TIMEOUT_SECONDS),
    )
