"""
Pydantic models for scheduling, credentials and calendar sync.
"""

import uuid
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AppointmentStatus(str, Enum):
    """Appointment lifecycle status."""
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


ACTIVE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)
TERMINAL_STATUSES = (
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
)


class AppointmentType(str, Enum):
    """Consultation modality."""
    PRESENTIAL = "presential"
    REMOTE = "remote"
    HOME = "home"


class ReminderType(str, Enum):
    DAY_BEFORE = "24h_before"
    TWO_HOURS_BEFORE = "2h_before"
    PAYMENT_REMINDER = "payment_reminder"
    FOLLOW_UP = "follow_up"


class ReminderMethod(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    SMS = "sms"


class Reminder(BaseModel):
    """Reminder bookkeeping for an appointment."""
    type: ReminderType
    method: ReminderMethod
    sent: bool = False
    sent_at: Optional[datetime] = None


class ConsultationDetails(BaseModel):
    """Clinical details recorded when an appointment is completed."""
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    next_appointment: Optional[datetime] = None
    notes: Optional[str] = None


class Appointment(BaseModel):
    """Local appointment record, authoritative for the booking lifecycle."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    doctor_id: str
    patient_id: Optional[str] = Field(None, description="Unresolved for stubs materialized from the remote calendar")
    start_time: datetime
    duration_minutes: int
    type: AppointmentType = AppointmentType.PRESENTIAL
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    title: Optional[str] = None
    notes: Optional[str] = None
    consultation_details: Optional[ConsultationDetails] = None
    external_event_id: Optional[str] = None
    external_calendar_id: Optional[str] = None
    reminders: List[Reminder] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None
    cancellation_penalty: Optional[float] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("start_time", "created_at", "updated_at")
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open interval overlap: touching endpoints do not overlap."""
        return self.start_time < end and self.end_time > start


class DayWindow(BaseModel):
    """Open/closed window for one weekday, in the doctor's local time."""
    start: time = time(9, 0)
    end: time = time(18, 0)
    available: bool = True


WEEKDAY_NAMES = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class WorkingHoursPolicy(BaseModel):
    """Per-weekday working hours for a doctor."""
    timezone: str = "America/Santiago"
    monday: DayWindow = Field(default_factory=DayWindow)
    tuesday: DayWindow = Field(default_factory=DayWindow)
    wednesday: DayWindow = Field(default_factory=DayWindow)
    thursday: DayWindow = Field(default_factory=DayWindow)
    friday: DayWindow = Field(default_factory=DayWindow)
    saturday: DayWindow = Field(default_factory=lambda: DayWindow(available=False))
    sunday: DayWindow = Field(default_factory=lambda: DayWindow(available=False))

    def for_weekday(self, weekday_name: str) -> DayWindow:
        if weekday_name not in WEEKDAY_NAMES:
            raise KeyError(weekday_name)
        return getattr(self, weekday_name)


class CancellationPolicy(BaseModel):
    hours_notice: int = 24
    penalty_percentage: float = 0


class DoctorProfile(BaseModel):
    """Read-only view of the doctor profile owned by the practice directory."""
    id: str
    name: str
    specialization: Optional[str] = None
    email: Optional[str] = None
    is_active: bool = True
    working_hours: WorkingHoursPolicy = Field(default_factory=WorkingHoursPolicy)
    cancellation_policy: CancellationPolicy = Field(default_factory=CancellationPolicy)


class PatientSummary(BaseModel):
    id: str
    doctor_id: str
    name: str
    phone: Optional[str] = None
    is_active: bool = True


class ExternalCalendarCredential(BaseModel):
    """OAuth token set for a doctor's remote calendar. One active set per doctor."""
    doctor_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expiry_date: Optional[datetime] = None
    scope: str = "https://www.googleapis.com/auth/calendar"
    token_type: str = "Bearer"
    calendar_id: str = "primary"
    calendar_name: Optional[str] = None
    is_active: bool = True
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("expiry_date", "last_sync", "next_sync")
    @classmethod
    def make_optional_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(v) if v is not None else None

    def is_expired(self, now: datetime) -> bool:
        """The access token is stale once now >= expiry_date."""
        if not self.access_token or self.expiry_date is None:
            return True
        return now >= self.expiry_date


class ConnectionStatus(BaseModel):
    is_connected: bool
    calendar_name: Optional[str] = None
    calendar_id: Optional[str] = None
    last_sync: Optional[datetime] = None
    next_sync: Optional[datetime] = None


class OAuthExchangeResult(BaseModel):
    doctor_id: str
    credential: ExternalCalendarCredential


class ExternalEvent(BaseModel):
    """Normalized remote calendar entry (transient, never persisted as such)."""
    id: str
    title: str = ""
    description: Optional[str] = None
    start: datetime
    end: datetime
    time_zone: Optional[str] = None
    all_day: bool = False
    transparent: bool = False
    status: str = "confirmed"
    html_link: Optional[str] = None
    reminder_overrides: List[int] = Field(default_factory=list)
    private_properties: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @property
    def blocks_time(self) -> bool:
        return not self.transparent and not self.is_cancelled

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class BusyInterval(BaseModel):
    start: datetime
    end: datetime


class AvailabilitySlot(BaseModel):
    start: datetime
    end: datetime
    available: bool


class FreeBusyResult(BaseModel):
    busy: List[BusyInterval] = Field(default_factory=list)
    timeline: List[AvailabilitySlot] = Field(default_factory=list)


class AvailabilityDecision(BaseModel):
    """Outcome of a single admission check."""
    available: bool
    failed_stage: Optional[Literal["working_hours", "local_overlap", "remote_overlap"]] = None
    reason: Optional[str] = None
    remote_checked: bool = False
    fail_open: bool = False


class SyncError(BaseModel):
    event_id: Optional[str] = None
    message: str


class SyncResult(BaseModel):
    doctor_id: str
    total_events: int = 0
    new_appointments: int = 0
    updated_appointments: int = 0
    skipped_events: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


class CreateAppointmentRequest(BaseModel):
    doctor_id: str
    patient_id: str
    start_time: datetime
    duration_minutes: int
    type: AppointmentType = AppointmentType.PRESENTIAL
    title: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class Reschedule(BaseModel):
    """Move an appointment; duration unchanged when omitted."""
    kind: Literal["reschedule"] = "reschedule"
    start_time: datetime
    duration_minutes: Optional[int] = None

    @field_validator("start_time")
    @classmethod
    def make_aware(cls, v: datetime) -> datetime:
        return ensure_aware(v)


class ChangeDetails(BaseModel):
    """Edit descriptive fields; None leaves a field unchanged."""
    kind: Literal["details"] = "details"
    type: Optional[AppointmentType] = None
    title: Optional[str] = None
    notes: Optional[str] = None


class ChangeStatus(BaseModel):
    kind: Literal["status"] = "status"
    status: AppointmentStatus


class RecordConsultation(BaseModel):
    kind: Literal["consultation"] = "consultation"
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    next_appointment: Optional[datetime] = None
    notes: Optional[str] = None


AppointmentUpdate = Annotated[
    Union[Reschedule, ChangeDetails, ChangeStatus, RecordConsultation],
    Field(discriminator="kind"),
]


class AppointmentView(BaseModel):
    """Appointment enriched with doctor and patient details for callers."""
    id: Optional[str] = None
    doctor_id: str
    patient_id: Optional[str] = None
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    type: Optional[AppointmentType] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    title: Optional[str] = None
    notes: Optional[str] = None
    consultation_details: Optional[ConsultationDetails] = None
    external_event_id: Optional[str] = None
    reminders: List[Reminder] = Field(default_factory=list)
    cancellation_reason: Optional[str] = None
    cancellation_penalty: Optional[float] = None
    patient_name: Optional[str] = None
    patient_phone: Optional[str] = None
    doctor_name: Optional[str] = None
    doctor_specialization: Optional[str] = None
    source: Literal["local", "remote"] = "local"

    @classmethod
    def from_appointment(
        cls,
        appointment: Appointment,
        doctor: Optional[DoctorProfile] = None,
        patient: Optional[PatientSummary] = None,
        source: str = "local",
    ) -> "AppointmentView":
        return cls(
            id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_id=appointment.patient_id,
            start_time=appointment.start_time,
            end_time=appointment.end_time,
            duration_minutes=appointment.duration_minutes,
            type=appointment.type,
            status=appointment.status,
            title=appointment.title,
            notes=appointment.notes,
            consultation_details=appointment.consultation_details,
            external_event_id=appointment.external_event_id,
            reminders=appointment.reminders,
            cancellation_reason=appointment.cancellation_reason,
            cancellation_penalty=appointment.cancellation_penalty,
            patient_name=patient.name if patient else None,
            patient_phone=patient.phone if patient else None,
            doctor_name=doctor.name if doctor else None,
            doctor_specialization=doctor.specialization if doctor else None,
            source=source,
        )


class AppointmentListing(BaseModel):
    """Result of a range listing and where it was read from."""
    doctor_id: str
    appointments: List[AppointmentView] = Field(default_factory=list)
    source: Literal["local", "remote"] = "local"
    fetched_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
