"""
In-memory stores

Single-process implementations of the store interfaces. Used as test
doubles and for local development. Records are copied on the way in and
out so callers never share mutable state with the store.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import ConflictError, NotFoundError
from practice_scheduling.models.scheduling import (
    Appointment,
    AppointmentStatus,
    DoctorProfile,
    ExternalCalendarCredential,
    PatientSummary,
    utcnow,
)

logger = logging.getLogger(__name__)


class InMemoryAppointmentStore(AppointmentStore):

    def __init__(self, appointments: Optional[Iterable[Appointment]] = None):
        self._appointments: Dict[str, Appointment] = {}
        self._lock = asyncio.Lock()
        for appointment in appointments or []:
            self._appointments[appointment.id] = appointment.model_copy(deep=True)

    async def get(self, appointment_id: str) -> Optional[Appointment]:
        appointment = self._appointments.get(appointment_id)
        return appointment.model_copy(deep=True) if appointment else None

    async def find_by_external_id(self, doctor_id: str, external_event_id: str) -> Optional[Appointment]:
        for appointment in self._appointments.values():
            if appointment.doctor_id == doctor_id and appointment.external_event_id == external_event_id:
                return appointment.model_copy(deep=True)
        return None

    async def list_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[Appointment]:
        wanted = set(statuses) if statuses is not None else None
        result = [
            a for a in self._appointments.values()
            if a.doctor_id == doctor_id
            and (start is None or a.start_time >= start)
            and (end is None or a.start_time <= end)
            and (wanted is None or a.status in wanted)
        ]
        result.sort(key=lambda a: a.start_time)
        return [a.model_copy(deep=True) for a in result]

    async def list_active_for_doctor(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Appointment]:
        return [a.model_copy(deep=True) for a in self._active_overlapping(doctor_id, start, end)]

    def _active_overlapping(
        self,
        doctor_id: str,
        start: Optional[datetime],
        end: Optional[datetime],
        exclude_id: Optional[str] = None,
    ) -> List[Appointment]:
        result = []
        for a in self._appointments.values():
            if a.doctor_id != doctor_id or not a.is_active or a.id == exclude_id:
                continue
            if start is not None and a.end_time <= start:
                continue
            if end is not None and a.start_time >= end:
                continue
            result.append(a)
        result.sort(key=lambda a: a.start_time)
        return result

    async def insert_if_free(self, appointment: Appointment) -> Appointment:
        async with self._lock:
            if appointment.id in self._appointments:
                raise ConflictError(f"Appointment {appointment.id} already exists")
            if appointment.is_active:
                clashes = self._active_overlapping(
                    appointment.doctor_id, appointment.start_time, appointment.end_time
                )
                if clashes:
                    raise ConflictError(
                        f"Time slot overlaps appointment {clashes[0].id}",
                        doctor_id=appointment.doctor_id,
                    )
            self._appointments[appointment.id] = appointment.model_copy(deep=True)
            return appointment

    async def save(self, appointment: Appointment, check_overlap: bool = False) -> Appointment:
        async with self._lock:
            if appointment.id not in self._appointments:
                raise NotFoundError("Appointment", appointment.id)
            if check_overlap and appointment.is_active:
                clashes = self._active_overlapping(
                    appointment.doctor_id,
                    appointment.start_time,
                    appointment.end_time,
                    exclude_id=appointment.id,
                )
                if clashes:
                    raise ConflictError(
                        f"Time slot overlaps appointment {clashes[0].id}",
                        doctor_id=appointment.doctor_id,
                    )
            appointment.updated_at = utcnow()
            self._appointments[appointment.id] = appointment.model_copy(deep=True)
            return appointment


class InMemoryCredentialStore(CredentialStore):

    def __init__(self, credentials: Optional[Iterable[ExternalCalendarCredential]] = None):
        self._credentials: Dict[str, ExternalCalendarCredential] = {}
        for credential in credentials or []:
            self._credentials[credential.doctor_id] = credential.model_copy(deep=True)

    async def get(self, doctor_id: str) -> Optional[ExternalCalendarCredential]:
        credential = self._credentials.get(doctor_id)
        return credential.model_copy(deep=True) if credential else None

    async def save(self, credential: ExternalCalendarCredential) -> ExternalCalendarCredential:
        # One record per doctor: saving replaces the previous token set
        credential.updated_at = utcnow()
        self._credentials[credential.doctor_id] = credential.model_copy(deep=True)
        return credential

    async def list_active(self) -> List[ExternalCalendarCredential]:
        return [c.model_copy(deep=True) for c in self._credentials.values() if c.is_active]


class InMemoryDoctorDirectory(DoctorDirectory):

    def __init__(
        self,
        doctors: Optional[Iterable[DoctorProfile]] = None,
        patients: Optional[Iterable[PatientSummary]] = None,
    ):
        self.doctors: Dict[str, DoctorProfile] = {d.id: d for d in doctors or []}
        self.patients: Dict[str, PatientSummary] = {p.id: p for p in patients or []}

    async def get_doctor(self, doctor_id: str) -> Optional[DoctorProfile]:
        return self.doctors.get(doctor_id)

    async def get_patient(self, patient_id: str) -> Optional[PatientSummary]:
        return self.patients.get(patient_id)
