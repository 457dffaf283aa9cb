"""Availability, OAuth and calendar reconciliation core for practice scheduling."""

__all__ = ["SchedulingCore", "build_scheduling_core"]


def __getattr__(name):  # pragma: no cover - trivial accessor
    if name in __all__:
        from . import app_factory

        return getattr(app_factory, name)
    raise AttributeError(name)
