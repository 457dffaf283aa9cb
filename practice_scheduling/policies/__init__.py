"""
Policies package bootstrap.

Exposes the working-hours policy used by the availability checker.
"""

from .working_hours import resolve_window, weekday_name  # noqa: F401
