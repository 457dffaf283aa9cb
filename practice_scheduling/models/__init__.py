"""Data models for the scheduling core."""
from practice_scheduling.models.scheduling import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    AppointmentType,
    AppointmentUpdate,
    AppointmentView,
    ExternalCalendarCredential,
    ExternalEvent,
    WorkingHoursPolicy,
)

__all__ = [
    "ACTIVE_STATUSES",
    "Appointment",
    "AppointmentStatus",
    "AppointmentType",
    "AppointmentUpdate",
    "AppointmentView",
    "ExternalCalendarCredential",
    "ExternalEvent",
    "WorkingHoursPolicy",
]
