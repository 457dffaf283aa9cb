"""
Supabase-backed stores

Tables (healthcare schema):
- appointments: one row per appointment; an exclusion constraint on
  (doctor_id, tstzrange(start_time, end_time)) for scheduled/confirmed rows
  enforces overlap-freedom at the database
- calendar_credentials: one row per doctor (doctor_id primary key)
- doctors / patients: owned by the practice directory, read-only here
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client, create_client
from supabase.client import ClientOptions

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import ConflictError, NotFoundError
from practice_scheduling.models.scheduling import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    DoctorProfile,
    ExternalCalendarCredential,
    PatientSummary,
    utcnow,
)

logger = logging.getLogger(__name__)

# Postgres error codes raised by the overlap guard
EXCLUSION_VIOLATION = "23P01"
UNIQUE_VIOLATION = "23505"


def create_supabase_client(settings: CalendarSettings, schema: str = "healthcare") -> Client:
    """Build a Supabase client bound to the given schema."""
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    options = ClientOptions(schema=schema, auto_refresh_token=False, persist_session=False)
    return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, options=options)


def _appointment_to_row(appointment: Appointment) -> Dict[str, Any]:
    row = appointment.model_dump(mode="json")
    row["end_time"] = appointment.end_time.isoformat()
    return row


def _row_to_appointment(row: Dict[str, Any]) -> Appointment:
    data = dict(row)
    data.pop("end_time", None)
    return Appointment.model_validate(data)


def _is_overlap_violation(error: Exception) -> bool:
    code = getattr(error, "code", None)
    return code in (EXCLUSION_VIOLATION, UNIQUE_VIOLATION)


class SupabaseAppointmentStore(AppointmentStore):

    def __init__(self, supabase_client: Client, table_name: str = "appointments"):
        self.client = supabase_client
        self.table_name = table_name

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        result = self.client.table(self.table_name).select("*").eq(
            "id", appointment_id
        ).limit(1).execute()
        if not result.data:
            return None
        return _row_to_appointment(result.data[0])

    async def find_by_external_id(self, doctor_id: str, external_event_id: str) -> Optional[Appointment]:
        result = self.client.table(self.table_name).select("*").eq(
            "doctor_id", doctor_id
        ).eq(
            "external_event_id", external_event_id
        ).limit(1).execute()
        if not result.data:
            return None
        return _row_to_appointment(result.data[0])

    async def list_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        query = self.client.table(self.table_name).select("*").eq("doctor_id", doctor_id)
        if start is not None:
            query = query.gte("start_time", start.isoformat())
        if end is not None:
            query = query.lte("start_time", end.isoformat())
        if statuses is not None:
            query = query.in_("status", [s.value for s in statuses])
        result = query.order("start_time").execute()
        return [_row_to_appointment(row) for row in result.data or []]

    async def list_active_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        query = self.client.table(self.table_name).select("*").eq(
            "doctor_id", doctor_id
        ).in_(
            "status", [s.value for s in ACTIVE_STATUSES]
        )
        if end is not None:
            query = query.lt("start_time", end.isoformat())
        if start is not None:
            query = query.gt("end_time", start.isoformat())
        result = query.order("start_time").execute()
        return [_row_to_appointment(row) for row in result.data or []]

    async def insert_if_free(self, appointment: Appointment) -> Appointment:
        try:
            self.client.table(self.table_name).insert(_appointment_to_row(appointment)).execute()
        except Exception as e:
            if _is_overlap_violation(e):
                raise ConflictError(
                    "Time slot overlaps an existing appointment",
                    doctor_id=appointment.doctor_id,
                ) from e
            raise
        return appointment

    async def save(self, appointment: Appointment, check_overlap: bool = False) -> Appointment:
        # The exclusion constraint applies to every write, so check_overlap is implicit here
        appointment.updated_at = utcnow()
        try:
            result = self.client.table(self.table_name).update(
                _appointment_to_row(appointment)
            ).eq("id", appointment.id).execute()
        except Exception as e:
            if _is_overlap_violation(e):
                raise ConflictError(
                    "Time slot overlaps an existing appointment",
                    doctor_id=appointment.doctor_id,
                ) from e
            raise
        if not result.data:
            raise NotFoundError("Appointment", appointment.id)
        return appointment


class SupabaseCredentialStore(CredentialStore):

    def __init__(self, supabase_client: Client, table_name: str = "calendar_credentials"):
        self.client = supabase_client
        self.table_name = table_name

    async def get(self, doctor_id: str) -> Optional[ExternalCalendarCredential]:
        result = self.client.table(self.table_name).select("*").eq(
            "doctor_id", doctor_id
        ).limit(1).execute()
        if not result.data:
            return None
        return ExternalCalendarCredential.model_validate(result.data[0])

    async def save(self, credential: ExternalCalendarCredential) -> ExternalCalendarCredential:
        credential.updated_at = utcnow()
        self.client.table(self.table_name).upsert(
            credential.model_dump(mode="json"),
            on_conflict="doctor_id",
        ).execute()
        return credential

    async def list_active(self) -> List[ExternalCalendarCredential]:
        result = self.client.table(self.table_name).select("*").eq("is_active", True).execute()
        return [ExternalCalendarCredential.model_validate(row) for row in result.data or []]


class SupabaseDoctorDirectory(DoctorDirectory):

    def __init__(self, supabase_client: Client):
        self.client = supabase_client

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        result = self.client.table("doctors").select("*").eq("id", doctor_id).limit(1).execute()
        if not result.data:
            return None
        return DoctorProfile.model_validate(result.data[0])

    async def get_patient(self, patient_id: str) -> Optional[PatientSummary]:
        result = self.client.table("patients").select("*").eq("id", patient_id).limit(1).execute()
        if not result.data:
            return None
        return PatientSummary.model_validate(result.data[0])
