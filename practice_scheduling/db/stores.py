"""
Store interfaces

Explicit, id-indexed persistence seams for appointments, calendar
credentials and the practice directory. Implementations live in
db.memory (in-process) and db.supabase_store (Supabase).
"""

from datetime import datetime
from typing import Iterable, List, Optional

from practice_scheduling.models.scheduling import (
    Appointment,
    AppointmentStatus,
    DoctorProfile,
    ExternalCalendarCredential,
    PatientSummary,
)


class AppointmentStore:
    """Abstract appointment store. Appointments are never hard-deleted."""

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        raise NotImplementedError

    async def get_for_doctor(self, appointment_id: str, doctor_id: str) -> Optional[Appointment]:
        appointment = await self.get(appointment_id)
        if appointment is None or appointment.doctor_id != doctor_id:
            return None
        return appointment

    async def find_by_external_id(self, doctor_id: str, external_event_id: str) -> Optional[Appointment]:
        raise NotImplementedError

    async def list_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        """Appointments whose start falls in [start, end], ordered by start time."""
        raise NotImplementedError

    async def list_active_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        """Scheduled/confirmed appointments overlapping [start, end)."""
        raise NotImplementedError

    async def insert_if_free(self, appointment: Appointment) -> Appointment:
        """
        Atomically insert an appointment unless it overlaps an active one.

        Raises:
            ConflictError: If another active appointment of the doctor overlaps
        """
        raise NotImplementedError

    async def save(self, appointment: Appointment, check_overlap: bool = False) -> Appointment:
        """
        Persist changes to an existing appointment.

        Args:
            check_overlap: Reject the write with ConflictError when the (active)
                appointment would overlap another active appointment
        """
        raise NotImplementedError


class CredentialStore:
    """Abstract store for external calendar credentials, keyed by doctor."""

    async def get(self, doctor_id: str) -> Optional[ExternalCalendarCredential]:
        """Credential record in any state (including disconnected)."""
        raise NotImplementedError

    async def get_active(self, doctor_id: str) -> Optional[ExternalCalendarCredential]:
        credential = await self.get(doctor_id)
        if credential is None or not credential.is_active:
            return None
        return credential

    async def save(self, credential: ExternalCalendarCredential) -> ExternalCalendarCredential:
        raise NotImplementedError

    async def list_active(self) -> List[ExternalCalendarCredential]:
        raise NotImplementedError


class DoctorDirectory:
    """Read-only access to doctor profiles and patients owned elsewhere."""

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        raise NotImplementedError

    async def get_patient(self, patient_id: str) -> Optional[PatientSummary]:
        raise NotImplementedError
