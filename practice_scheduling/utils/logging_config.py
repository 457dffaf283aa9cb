"""
Logging setup for processes embedding the scheduling core

Container runtimes stamp their own timestamps, so the formatter drops
asctime there. The level comes from CalendarSettings.LOG_LEVEL unless given.

Usage:
    from practice_scheduling.utils.logging_config import configure_logging
    configure_logging(settings)
"""
import logging
import os
import sys
from typing import Optional

from practice_scheduling.config import CalendarSettings

CONTAINER_MARKERS = ('FLY_APP_NAME', 'KUBERNETES_SERVICE_HOST')

CONTAINER_FORMAT = "[%(name)s] %(levelname)s: %(message)s"
LOCAL_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Request-per-line loggers from the HTTP client and scheduler
QUIET_LOGGERS = ('httpx', 'httpcore', 'hpack', 'apscheduler.executors.default')

_HANDLER_NAME = "practice_scheduling"


def running_in_container() -> bool:
    return any(os.environ.get(name) for name in CONTAINER_MARKERS) or os.path.exists('/.dockerenv')


def configure_logging(
    settings: Optional[CalendarSettings] = None,
    level: Optional[int] = None,
    force: bool = False,
) -> logging.Handler:
    """
    Install one stdout handler on the root logger.

    Calling again without force keeps the installed handler and only
    adjusts the level.

    Args:
        settings: Source of LOG_LEVEL when level is not given
        level: Explicit logging level, overrides settings
        force: Drop every existing root handler first
    """
    if level is None:
        name = settings.LOG_LEVEL if settings is not None else "INFO"
        level = logging.getLevelName(name.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    if force:
        for existing in root.handlers[:]:
            root.removeHandler(existing)

    handler = next((h for h in root.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        container = running_in_container()
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(
            CONTAINER_FORMAT if container else LOCAL_FORMAT,
            datefmt=None if container else DATE_FORMAT,
        ))
        root.addHandler(handler)

    handler.setLevel(level)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
