"""
Appointment Service

Booking lifecycle for the local appointment store, which is the system of
record. Every committed change is mirrored to the doctor's remote calendar
on a best-effort basis: a mirroring failure is logged and audited but never
undoes the local write.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import ConflictError, NotFoundError, ValidationError
from practice_scheduling.models.scheduling import (
    Appointment,
    AppointmentStatus,
    AppointmentUpdate,
    AppointmentView,
    ChangeDetails,
    ChangeStatus,
    ConsultationDetails,
    CreateAppointmentRequest,
    DoctorProfile,
    ExternalCalendarCredential,
    RecordConsultation,
    Reschedule,
    utcnow,
)
from practice_scheduling.resilience import run_best_effort
from practice_scheduling.services.audit_logger import AuditCategory, AuditLevel, AuditLogger
from practice_scheduling.services.availability_service import AvailabilityService
from practice_scheduling.services.external_calendar_service import ExternalCalendarGateway

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset({
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.CONFIRMED: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}


def transition(current: AppointmentStatus, target: AppointmentStatus) -> AppointmentStatus:
    """
    Validate a status change

    Raises:
        ConflictError: When cancelling an already-cancelled appointment
        ValidationError: For any other transition the lifecycle does not allow
    """
    if current == AppointmentStatus.CANCELLED and target == AppointmentStatus.CANCELLED:
        raise ConflictError("Appointment is already cancelled")
    if target == AppointmentStatus.COMPLETED and current != AppointmentStatus.CONFIRMED:
        raise ValidationError("Appointment must be confirmed to complete")
    if target not in ALLOWED_TRANSITIONS[current]:
        raise ValidationError(f"Cannot change appointment status from {current.value} to {target.value}")
    return target


class AppointmentService:
    """Creates and mutates appointments, enriching results for callers"""

    def __init__(
        self,
        settings: CalendarSettings,
        appointments: AppointmentStore,
        directory: DoctorDirectory,
        availability: AvailabilityService,
        credentials: CredentialStore,
        gateway: Optional[ExternalCalendarGateway] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.appointments = appointments
        self.directory = directory
        self.availability = availability
        self.credentials = credentials
        self.gateway = gateway
        self.audit = audit or AuditLogger()
        self.clock = clock or utcnow

    async def create_appointment(self, request: CreateAppointmentRequest) -> AppointmentView:
        """
        Book an appointment

        The admission check and the insert are closed against concurrent
        bookings by the store's check-and-insert; losing that race surfaces
        as ConflictError just like an unavailable slot.

        Raises:
            ValidationError: If the duration is not positive
            NotFoundError: If the doctor or patient does not exist
            ConflictError: If the slot is not available
        """
        if request.duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive", doctor_id=request.doctor_id)

        doctor = await self._get_doctor(request.doctor_id)
        patient = await self.directory.get_patient(request.patient_id)
        if patient is None or not patient.is_active or patient.doctor_id != request.doctor_id:
            raise NotFoundError("Patient", request.patient_id)

        decision = await self.availability.check_availability(
            request.doctor_id, request.start_time, request.duration_minutes
        )
        if not decision.available:
            raise ConflictError(
                f"Time slot is not available: {decision.reason}",
                doctor_id=request.doctor_id,
            )

        appointment = Appointment(
            doctor_id=request.doctor_id,
            patient_id=request.patient_id,
            start_time=request.start_time,
            duration_minutes=request.duration_minutes,
            type=request.type,
            title=request.title or f"Consultation with {patient.name}",
            notes=request.notes,
        )
        appointment = await self.appointments.insert_if_free(appointment)

        await self._mirror_create(appointment, doctor)

        await self.audit.log_event(
            AuditCategory.APPOINTMENT,
            "appointment_created",
            doctor_id=doctor.id,
            resource_id=appointment.id,
            resource_type="appointment",
            details={
                'patient_name': patient.name,
                'start_time': appointment.start_time.isoformat(),
                'type': appointment.type.value,
                'mirrored': appointment.external_event_id is not None,
            },
        )
        logger.info(f"Created appointment {appointment.id} for doctor {doctor.id}")
        return AppointmentView.from_appointment(appointment, doctor, patient)

    async def update_appointment(
        self,
        appointment_id: str,
        doctor_id: str,
        update: AppointmentUpdate,
    ) -> AppointmentView:
        """Apply one tagged update variant."""
        if isinstance(update, ChangeStatus):
            return await self._change_status(appointment_id, doctor_id, update.status)

        appointment = await self._get_owned(appointment_id, doctor_id)
        doctor = await self._get_doctor(doctor_id)

        if isinstance(update, Reschedule):
            appointment = await self._reschedule(appointment, update)
        elif isinstance(update, ChangeDetails):
            if update.type is not None:
                appointment.type = update.type
            if update.title is not None:
                appointment.title = update.title
            if update.notes is not None:
                appointment.notes = update.notes
            appointment = await self.appointments.save(appointment)
        elif isinstance(update, RecordConsultation):
            if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
                raise ValidationError(
                    f"Cannot record a consultation on a {appointment.status.value} appointment",
                    doctor_id=doctor_id,
                )
            appointment.consultation_details = self._merge_consultation(appointment.consultation_details, update)
            appointment = await self.appointments.save(appointment)
        else:
            raise ValidationError(f"Unsupported update: {type(update).__name__}", doctor_id=doctor_id)

        if appointment.is_active and not isinstance(update, RecordConsultation):
            await self._mirror_update(appointment, doctor)

        await self.audit.log_event(
            AuditCategory.APPOINTMENT,
            "appointment_updated",
            doctor_id=doctor_id,
            resource_id=appointment.id,
            resource_type="appointment",
            details={'update': update.kind},
        )
        return await self._to_view(appointment, doctor)

    async def cancel_appointment(
        self,
        appointment_id: str,
        doctor_id: str,
        reason: Optional[str] = None,
    ) -> AppointmentView:
        """
        Cancel an appointment, applying the doctor's cancellation policy

        A penalty is recorded when the remaining notice is shorter than the
        policy's hours_notice.
        """
        appointment = await self._get_owned(appointment_id, doctor_id)
        doctor = await self.directory.get_doctor(doctor_id)

        appointment.status = transition(appointment.status, AppointmentStatus.CANCELLED)
        now = self.clock()
        if doctor is not None:
            policy = doctor.cancellation_policy
            hours_until = (appointment.start_time - now).total_seconds() / 3600
            if hours_until < policy.hours_notice:
                appointment.cancellation_penalty = policy.penalty_percentage
        appointment.cancellation_reason = reason
        appointment.cancelled_at = now
        appointment = await self.appointments.save(appointment)

        if appointment.external_event_id:
            await self._mirror_delete(appointment)

        await self.audit.log_event(
            AuditCategory.APPOINTMENT,
            "appointment_cancelled",
            level=AuditLevel.WARNING,
            doctor_id=doctor_id,
            resource_id=appointment.id,
            resource_type="appointment",
            details={'reason': reason, 'penalty': appointment.cancellation_penalty},
        )
        logger.info(f"Cancelled appointment {appointment.id} for doctor {doctor_id}")
        return await self._to_view(appointment, doctor)

    async def confirm_appointment(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        appointment = await self._get_owned(appointment_id, doctor_id)
        appointment.status = transition(appointment.status, AppointmentStatus.CONFIRMED)
        appointment = await self.appointments.save(appointment)
        await self._audit_status(appointment, "appointment_confirmed")
        return await self._to_view(appointment)

    async def complete_appointment(
        self,
        appointment_id: str,
        doctor_id: str,
        consultation: Optional[RecordConsultation] = None,
    ) -> AppointmentView:
        """Mark a confirmed appointment completed, recording consultation details."""
        appointment = await self._get_owned(appointment_id, doctor_id)
        appointment.status = transition(appointment.status, AppointmentStatus.COMPLETED)
        if consultation is not None:
            appointment.consultation_details = self._merge_consultation(
                appointment.consultation_details, consultation
            )
        appointment = await self.appointments.save(appointment)
        await self._audit_status(
            appointment,
            "appointment_completed",
            {'diagnosis': consultation.diagnosis if consultation else None},
        )
        return await self._to_view(appointment)

    async def mark_no_show(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        appointment = await self._get_owned(appointment_id, doctor_id)
        appointment.status = transition(appointment.status, AppointmentStatus.NO_SHOW)
        appointment = await self.appointments.save(appointment)
        await self._audit_status(appointment, "appointment_no_show")
        return await self._to_view(appointment)

    async def get_appointment(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        appointment = await self._get_owned(appointment_id, doctor_id)
        return await self._to_view(appointment)

    async def list_appointments(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[AppointmentView]:
        """Local appointments whose start falls in [start, end], enriched."""
        doctor = await self.directory.get_doctor(doctor_id)
        appointments = await self.appointments.list_for_doctor(doctor_id, start, end, statuses)
        return [await self._to_view(a, doctor) for a in appointments]

    async def _change_status(self, appointment_id: str, doctor_id: str, status: AppointmentStatus) -> AppointmentView:
        if status == AppointmentStatus.CANCELLED:
            return await self.cancel_appointment(appointment_id, doctor_id)
        if status == AppointmentStatus.CONFIRMED:
            return await self.confirm_appointment(appointment_id, doctor_id)
        if status == AppointmentStatus.COMPLETED:
            return await self.complete_appointment(appointment_id, doctor_id)
        if status == AppointmentStatus.NO_SHOW:
            return await self.mark_no_show(appointment_id, doctor_id)
        appointment = await self._get_owned(appointment_id, doctor_id)
        raise ValidationError(
            f"Cannot change appointment status from {appointment.status.value} to {status.value}",
            doctor_id=doctor_id,
        )

    async def _reschedule(self, appointment: Appointment, update: Reschedule) -> Appointment:
        if not appointment.is_active:
            raise ValidationError(
                f"Cannot reschedule a {appointment.status.value} appointment",
                doctor_id=appointment.doctor_id,
            )
        duration = update.duration_minutes if update.duration_minutes is not None else appointment.duration_minutes
        if duration <= 0:
            raise ValidationError("duration_minutes must be positive", doctor_id=appointment.doctor_id)

        decision = await self.availability.check_availability(
            appointment.doctor_id,
            update.start_time,
            duration,
            exclude_appointment_id=appointment.id,
        )
        if not decision.available:
            raise ConflictError(
                f"Time slot is not available: {decision.reason}",
                doctor_id=appointment.doctor_id,
            )

        appointment.start_time = update.start_time
        appointment.duration_minutes = duration
        return await self.appointments.save(appointment, check_overlap=True)

    @staticmethod
    def _merge_consultation(
        current: Optional[ConsultationDetails], update: RecordConsultation
    ) -> ConsultationDetails:
        merged = current.model_dump() if current else {}
        merged.update(update.model_dump(exclude={'kind'}, exclude_none=True))
        return ConsultationDetails(**merged)

    async def _get_doctor(self, doctor_id: str) -> DoctorProfile:
        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None or not doctor.is_active:
            raise NotFoundError("Doctor", doctor_id)
        return doctor

    async def _get_owned(self, appointment_id: str, doctor_id: str) -> Appointment:
        appointment = await self.appointments.get_for_doctor(appointment_id, doctor_id)
        if appointment is None:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    async def _to_view(self, appointment: Appointment, doctor: Optional[DoctorProfile] = None) -> AppointmentView:
        if doctor is None:
            doctor = await self.directory.get_doctor(appointment.doctor_id)
        patient = await self.directory.get_patient(appointment.patient_id) if appointment.patient_id else None
        return AppointmentView.from_appointment(appointment, doctor, patient)

    async def _audit_status(self, appointment: Appointment, action: str, details: Optional[Dict] = None) -> None:
        await self.audit.log_event(
            AuditCategory.APPOINTMENT,
            action,
            doctor_id=appointment.doctor_id,
            resource_id=appointment.id,
            resource_type="appointment",
            details=details,
        )

    async def _remote_credential(self, doctor_id: str) -> Optional[ExternalCalendarCredential]:
        """Active credential when mirroring is possible, None otherwise."""
        if self.gateway is None:
            return None
        lookup = await run_best_effort("load_calendar_credential", self.credentials.get_active(doctor_id))
        return lookup.value if lookup.ok else None

    async def _mirror_create(self, appointment: Appointment, doctor: DoctorProfile) -> None:
        credential = await self._remote_credential(doctor.id)
        if credential is None:
            return
        result = await run_best_effort(
            "mirror_create_event",
            self.gateway.create_event(doctor.id, appointment, doctor.working_hours.timezone),
        )
        if not result.ok:
            return

        appointment.external_event_id = result.value.id
        appointment.external_calendar_id = credential.calendar_id or "primary"
        saved = await run_best_effort("record_external_event_id", self.appointments.save(appointment))
        if not saved.ok:
            logger.error(
                f"Calendar event {result.value.id} created but not linked to appointment {appointment.id}"
            )

    async def _mirror_update(self, appointment: Appointment, doctor: DoctorProfile) -> None:
        if not appointment.external_event_id or await self._remote_credential(doctor.id) is None:
            return
        await run_best_effort(
            "mirror_update_event",
            self.gateway.update_event(
                doctor.id, appointment.external_event_id, appointment, doctor.working_hours.timezone
            ),
        )

    async def _mirror_delete(self, appointment: Appointment) -> None:
        if await self._remote_credential(appointment.doctor_id) is None:
            return
        await run_best_effort(
            "mirror_delete_event",
            self.gateway.delete_event(appointment.doctor_id, appointment.external_event_id),
        )
