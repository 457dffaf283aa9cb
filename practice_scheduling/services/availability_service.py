"""
Availability Service

Admission check for a candidate booking, in three ordered stages:
1. working-hours containment
2. overlap with the doctor's scheduled/confirmed appointments
3. overlap with opaque events on the doctor's remote calendar

The remote stage is fail-open: no credential, a timeout or any remote error
counts as available so that a calendar outage never blocks local booking.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import NotFoundError, ValidationError
from practice_scheduling.models.scheduling import (
    AvailabilityDecision,
    AvailabilitySlot,
    DoctorProfile,
    ExternalEvent,
    ensure_aware,
)
from practice_scheduling.policies.working_hours import resolve_window, weekday_name
from practice_scheduling.resilience import run_best_effort
from practice_scheduling.services.audit_logger import AuditCategory, AuditLogger
from practice_scheduling.services.external_calendar_service import ExternalCalendarGateway
from practice_scheduling.utils.timezone_utils import get_zone

logger = logging.getLogger(__name__)


class AvailabilityService:
    """
    Decides whether a doctor can take a booking and lists bookable slots
    """

    def __init__(
        self,
        settings: CalendarSettings,
        appointments: AppointmentStore,
        directory: DoctorDirectory,
        credentials: CredentialStore,
        gateway: Optional[ExternalCalendarGateway] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.settings = settings
        self.appointments = appointments
        self.directory = directory
        self.credentials = credentials
        self.gateway = gateway
        self.audit = audit or AuditLogger()

    async def is_available(self, doctor_id: str, start: datetime, duration_minutes: int) -> bool:
        decision = await self.check_availability(doctor_id, start, duration_minutes)
        return decision.available

    async def check_availability(
        self,
        doctor_id: str,
        start: datetime,
        duration_minutes: int,
        exclude_appointment_id: Optional[str] = None,
    ) -> AvailabilityDecision:
        """
        Run the three admission stages; the first failing stage short-circuits

        Args:
            doctor_id: Doctor UUID
            start: Candidate start (naive values are treated as UTC)
            duration_minutes: Candidate length, must be positive
            exclude_appointment_id: Appointment ignored by the local stage (rescheduling)

        Raises:
            NotFoundError: If the doctor is unknown or inactive
            ValidationError: If duration_minutes <= 0
        """
        if duration_minutes is None or duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive", doctor_id=doctor_id)
        doctor = await self._get_doctor(doctor_id)

        start = ensure_aware(start)
        end = start + timedelta(minutes=duration_minutes)

        decision = self._check_working_hours(doctor, start, end)
        if decision is None:
            decision = await self._check_local_overlap(doctor_id, start, end, exclude_appointment_id)
        if decision is None:
            decision = await self._check_remote_overlap(doctor_id, start, end)

        await self.audit.log_event(
            AuditCategory.AVAILABILITY,
            "availability_checked",
            doctor_id=doctor_id,
            details={
                'start': start.isoformat(),
                'duration_minutes': duration_minutes,
                'available': decision.available,
                'failed_stage': decision.failed_stage,
                'fail_open': decision.fail_open,
            },
        )
        return decision

    async def get_available_slots(
        self,
        doctor_id: str,
        day: date,
        duration_minutes: Optional[int] = None,
    ) -> List[AvailabilitySlot]:
        """
        Stepped slots inside the working-hours window of a local day

        Returns:
            Slots with an available flag; empty when the day is closed
        """
        duration = duration_minutes or self.settings.DEFAULT_SLOT_DURATION_MINUTES
        if duration <= 0:
            raise ValidationError("duration_minutes must be positive", doctor_id=doctor_id)
        doctor = await self._get_doctor(doctor_id)

        policy = doctor.working_hours
        noon = datetime.combine(day, time(12, 0), tzinfo=get_zone(policy.timezone))
        window = resolve_window(policy, noon)
        if window is None:
            return []
        window_start, window_end = window

        booked = await self.appointments.list_active_for_doctor(doctor_id, window_start, window_end)
        remote = None
        if await self._has_remote_calendar(doctor_id):
            remote = await self._remote_blocking_events(doctor_id, window_start, window_end)

        step = timedelta(minutes=self.settings.SLOT_STEP_MINUTES)
        length = timedelta(minutes=duration)
        slots = []
        cursor = window_start
        while cursor + length <= window_end:
            slot_end = cursor + length
            clash = any(a.overlaps(cursor, slot_end) for a in booked) or any(
                e.start < slot_end and e.end > cursor for e in remote or []
            )
            slots.append(AvailabilitySlot(start=cursor, end=slot_end, available=not clash))
            cursor += step
        return slots

    async def get_doctor_availability(
        self,
        doctor_id: str,
        start_date: date,
        end_date: date,
        duration_minutes: Optional[int] = None,
    ) -> Dict[str, List[AvailabilitySlot]]:
        """Slots for every date in [start_date, end_date], keyed by ISO date."""
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date", doctor_id=doctor_id)

        availability: Dict[str, List[AvailabilitySlot]] = {}
        current = start_date
        while current <= end_date:
            availability[current.isoformat()] = await self.get_available_slots(
                doctor_id, current, duration_minutes
            )
            current += timedelta(days=1)
        return availability

    async def _get_doctor(self, doctor_id: str) -> DoctorProfile:
        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None or not doctor.is_active:
            raise NotFoundError("Doctor", doctor_id)
        return doctor

    def _check_working_hours(
        self, doctor: DoctorProfile, start: datetime, end: datetime
    ) -> Optional[AvailabilityDecision]:
        window = resolve_window(doctor.working_hours, start)
        if window is None:
            day = weekday_name(start, doctor.working_hours.timezone)
            return AvailabilityDecision(
                available=False,
                failed_stage="working_hours",
                reason=f"Doctor does not work on {day}",
            )
        window_start, window_end = window
        if start < window_start or end > window_end:
            return AvailabilityDecision(
                available=False,
                failed_stage="working_hours",
                reason=f"Outside working hours {window_start.time():%H:%M}-{window_end.time():%H:%M}",
            )
        return None

    async def _check_local_overlap(
        self,
        doctor_id: str,
        start: datetime,
        end: datetime,
        exclude_appointment_id: Optional[str],
    ) -> Optional[AvailabilityDecision]:
        existing = await self.appointments.list_active_for_doctor(doctor_id, start, end)
        for appointment in existing:
            if appointment.id == exclude_appointment_id:
                continue
            if appointment.overlaps(start, end):
                return AvailabilityDecision(
                    available=False,
                    failed_stage="local_overlap",
                    reason=f"Overlaps appointment {appointment.id}",
                )
        return None

    async def _check_remote_overlap(self, doctor_id: str, start: datetime, end: datetime) -> AvailabilityDecision:
        if not await self._has_remote_calendar(doctor_id):
            return AvailabilityDecision(available=True)

        events = await self._remote_blocking_events(doctor_id, start, end)
        if events is None:
            return AvailabilityDecision(available=True, remote_checked=False, fail_open=True)
        if events:
            return AvailabilityDecision(
                available=False,
                failed_stage="remote_overlap",
                reason=f"Overlaps calendar event {events[0].id}",
                remote_checked=True,
            )
        return AvailabilityDecision(available=True, remote_checked=True)

    async def _has_remote_calendar(self, doctor_id: str) -> bool:
        if self.gateway is None:
            return False
        lookup = await run_best_effort("load_calendar_credential", self.credentials.get_active(doctor_id))
        return lookup.ok and lookup.value is not None

    async def _remote_blocking_events(
        self, doctor_id: str, start: datetime, end: datetime
    ) -> Optional[List[ExternalEvent]]:
        """Blocking remote events, or None when the remote calendar could not be consulted."""
        if self.gateway is None:
            return None
        result = await run_best_effort(
            "remote_availability",
            self.gateway.find_blocking_events(doctor_id, start, end),
        )
        if not result.ok:
            logger.warning(f"Remote availability unknown for doctor {doctor_id}, failing open")
            return None
        return result.value
