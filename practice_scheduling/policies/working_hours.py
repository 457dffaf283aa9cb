"""
Working-hours policy

Pure functions resolving a doctor's open/closed window for a given instant.
Windows are configured as local wall-clock times in the policy's timezone.
"""

from datetime import datetime
from typing import Optional, Tuple

from practice_scheduling.models.scheduling import WEEKDAY_NAMES, WorkingHoursPolicy
from practice_scheduling.utils.timezone_utils import get_zone, to_local


def weekday_name(moment: datetime, timezone_str: str) -> str:
    """Lower-case English weekday name of moment in the given timezone."""
    return WEEKDAY_NAMES[to_local(moment, timezone_str).weekday()]


def resolve_window(policy: WorkingHoursPolicy, moment: datetime) -> Optional[Tuple[datetime, datetime]]:
    """
    Resolve the working window for the local day containing moment.

    Returns:
        (window_start, window_end) as aware datetimes, or None when the day
        is marked unavailable or the window is empty
    """
    local = to_local(moment, policy.timezone)
    day = policy.for_weekday(WEEKDAY_NAMES[local.weekday()])
    if not day.available:
        return None

    zone = get_zone(policy.timezone)
    window_start = datetime.combine(local.date(), day.start, tzinfo=zone)
    window_end = datetime.combine(local.date(), day.end, tzinfo=zone)
    if window_end <= window_start:
        return None
    return window_start, window_end
