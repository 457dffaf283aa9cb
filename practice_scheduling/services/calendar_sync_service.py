"""
Calendar Sync Service

Reconciles a doctor's remote calendar into the local appointment store and
serves the remote-first range listing.

The local store is the system of record for the booking lifecycle. The
remote calendar is treated as a mirror whose view is at most one sync
interval stale: every sync stamps last_sync/next_sync on the credential and
listings report where they were read from and when.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import NotFoundError, ValidationError
from practice_scheduling.models.scheduling import (
    Appointment,
    AppointmentListing,
    AppointmentStatus,
    AppointmentType,
    AppointmentView,
    DoctorProfile,
    ExternalCalendarCredential,
    ExternalEvent,
    SyncError,
    SyncResult,
    utcnow,
)
from practice_scheduling.resilience import run_best_effort, run_critical
from practice_scheduling.services.audit_logger import AuditCategory, AuditLevel, AuditLogger
from practice_scheduling.services.external_calendar_service import ExternalCalendarGateway

logger = logging.getLogger(__name__)

NEW = "new"
UPDATED = "updated"
UNCHANGED = "unchanged"
SKIPPED = "skipped"


def _same_text(local: Optional[str], remote: Optional[str]) -> bool:
    return (local or "") == (remote or "")


def _appointment_type(event: ExternalEvent) -> AppointmentType:
    try:
        return AppointmentType(event.private_properties.get('appointment_type', AppointmentType.PRESENTIAL.value))
    except ValueError:
        return AppointmentType.PRESENTIAL


class CalendarSyncService:
    """Batch reconciliation and remote-first reads for one doctor at a time"""

    def __init__(
        self,
        settings: CalendarSettings,
        appointments: AppointmentStore,
        credentials: CredentialStore,
        directory: DoctorDirectory,
        gateway: ExternalCalendarGateway,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.appointments = appointments
        self.credentials = credentials
        self.directory = directory
        self.gateway = gateway
        self.audit = audit or AuditLogger()
        self.clock = clock or utcnow

    async def sync_appointments(self, doctor_id: str) -> SyncResult:
        """
        Pull remote events for the sync window and reconcile them locally

        Each event is processed on its own: a malformed or failing event is
        recorded in errors and the batch continues. Only failures that stop
        the listing itself (no credential, auth, upstream) are raised.

        Returns:
            SyncResult with per-outcome counters
        """
        credential = await self.credentials.get_active(doctor_id)
        if credential is None:
            raise NotFoundError("Calendar credential", doctor_id)

        now = self.clock()
        time_min = now - timedelta(days=self.settings.SYNC_LOOKBACK_DAYS)
        time_max = now + timedelta(days=self.settings.SYNC_LOOKAHEAD_DAYS)
        result = SyncResult(doctor_id=doctor_id, started_at=now)

        try:
            raw_events = await run_critical(
                "list_calendar_events", self.gateway.list_raw_events(doctor_id, time_min, time_max)
            )
        except Exception as e:
            await self.audit.log_event(
                AuditCategory.SYNC,
                "sync_completed",
                outcome="failure",
                level=AuditLevel.ERROR,
                doctor_id=doctor_id,
                details={'error': str(e), 'error_type': type(e).__name__},
            )
            raise

        logger.info(f"Syncing {len(raw_events)} calendar events for doctor {doctor_id}")
        for raw in raw_events:
            result.total_events += 1
            event_id = raw.get('id') if isinstance(raw, dict) else None
            try:
                outcome = await self._reconcile_event(doctor_id, credential, raw)
            except Exception as e:
                message = getattr(e, 'message', None) or str(e)
                logger.warning(f"Failed to sync event {event_id} for doctor {doctor_id}: {message}")
                result.errors.append(SyncError(event_id=event_id, message=message))
                continue

            if outcome == NEW:
                result.new_appointments += 1
            elif outcome == UPDATED:
                result.updated_appointments += 1
            elif outcome == SKIPPED:
                result.skipped_events += 1

        finished = self.clock()
        result.finished_at = finished
        await self._stamp_sync(doctor_id, finished)

        await self.audit.log_event(
            AuditCategory.SYNC,
            "sync_completed",
            outcome="partial" if result.errors else "success",
            level=AuditLevel.WARNING if result.errors else AuditLevel.INFO,
            doctor_id=doctor_id,
            details={
                'total_events': result.total_events,
                'new_appointments': result.new_appointments,
                'updated_appointments': result.updated_appointments,
                'skipped_events': result.skipped_events,
                'errors': len(result.errors),
            },
        )
        logger.info(
            f"Sync for doctor {doctor_id}: {result.new_appointments} new, "
            f"{result.updated_appointments} updated, {len(result.errors)} errors"
        )
        return result

    async def list_appointments_in_range(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> AppointmentListing:
        """
        Appointments in [start, end], read from the remote calendar when possible

        Remote events are joined with local records sharing their external id
        to recover patient, status and reminders. When the doctor has no
        calendar, the remote call fails or returns nothing, the local store
        answers instead.
        """
        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor", doctor_id)

        now = self.clock()
        start = start or now - timedelta(days=self.settings.SYNC_LOOKBACK_DAYS)
        end = end or now + timedelta(days=self.settings.SYNC_LOOKAHEAD_DAYS)
        if end <= start:
            raise ValidationError("end must be after start", doctor_id=doctor_id)

        fallback_reason = "calendar_not_connected"
        credential = await self.credentials.get_active(doctor_id)
        if credential is not None:
            remote = await run_best_effort(
                "list_remote_events",
                self.gateway.list_events(doctor_id, start, end),
            )
            if not remote.ok:
                fallback_reason = f"remote_unavailable: {type(remote.error).__name__}"
            elif not remote.value:
                fallback_reason = "remote_empty"
            else:
                views = []
                for event in remote.value:
                    if event.is_cancelled:
                        continue
                    views.append(await self._join_event(doctor, event))
                return AppointmentListing(
                    doctor_id=doctor_id,
                    appointments=views,
                    source="remote",
                    fetched_at=self.clock(),
                    metadata={
                        'time_min': start.isoformat(),
                        'time_max': end.isoformat(),
                        'last_sync': credential.last_sync.isoformat() if credential.last_sync else None,
                    },
                )

        local = await self.appointments.list_for_doctor(doctor_id, start, end)
        views = []
        for appointment in local:
            patient = await self.directory.get_patient(appointment.patient_id) if appointment.patient_id else None
            views.append(AppointmentView.from_appointment(appointment, doctor, patient, source="local"))
        return AppointmentListing(
            doctor_id=doctor_id,
            appointments=views,
            source="local",
            fetched_at=self.clock(),
            metadata={
                'time_min': start.isoformat(),
                'time_max': end.isoformat(),
                'fallback_reason': fallback_reason,
            },
        )

    async def _reconcile_event(
        self,
        doctor_id: str,
        credential: ExternalCalendarCredential,
        raw: Dict[str, Any],
    ) -> str:
        event = self.gateway.parse_event(raw)
        local = await self._find_local(doctor_id, event)

        if local is None:
            # Free, cancelled and all-day entries are not appointments
            if not event.blocks_time or event.all_day or event.duration_minutes <= 0:
                return SKIPPED
            stub = Appointment(
                doctor_id=doctor_id,
                patient_id=None,
                start_time=event.start,
                duration_minutes=event.duration_minutes,
                type=_appointment_type(event),
                status=AppointmentStatus.SCHEDULED,
                title=event.title or None,
                notes=event.description or None,
                external_event_id=event.id,
                external_calendar_id=credential.calendar_id,
            )
            await self.appointments.insert_if_free(stub)
            logger.debug(f"Materialized appointment {stub.id} from event {event.id}")
            return NEW

        if not local.is_active or not event.blocks_time:
            return SKIPPED

        changed = False
        if local.external_event_id != event.id:
            local.external_event_id = event.id
            local.external_calendar_id = credential.calendar_id
            changed = True
        if local.start_time != event.start or local.duration_minutes != event.duration_minutes:
            if event.duration_minutes <= 0:
                raise ValidationError(f"Event {event.id} has no duration")
            local.start_time = event.start
            local.duration_minutes = event.duration_minutes
            changed = True
        if not _same_text(local.title, event.title):
            local.title = event.title or None
            changed = True
        if not _same_text(local.notes, event.description):
            local.notes = event.description or None
            changed = True

        if not changed:
            return UNCHANGED
        await self.appointments.save(local, check_overlap=True)
        return UPDATED

    async def _find_local(self, doctor_id: str, event: ExternalEvent) -> Optional[Appointment]:
        local = await self.appointments.find_by_external_id(doctor_id, event.id)
        if local is not None:
            return local

        # Events mirrored from a booking whose id write-back was lost
        appointment_id = event.private_properties.get('appointment_id')
        if not appointment_id:
            return None
        candidate = await self.appointments.get_for_doctor(appointment_id, doctor_id)
        if candidate is not None and candidate.external_event_id in (None, event.id):
            return candidate
        return None

    async def _join_event(self, doctor: DoctorProfile, event: ExternalEvent) -> AppointmentView:
        local = await self._find_local(doctor.id, event)
        patient = None
        if local is not None and local.patient_id:
            patient = await self.directory.get_patient(local.patient_id)

        return AppointmentView(
            id=local.id if local else None,
            doctor_id=doctor.id,
            patient_id=local.patient_id if local else None,
            start_time=event.start,
            end_time=event.end,
            duration_minutes=event.duration_minutes,
            type=local.type if local else _appointment_type(event),
            status=local.status if local else AppointmentStatus.SCHEDULED,
            title=event.title or None,
            notes=event.description,
            consultation_details=local.consultation_details if local else None,
            external_event_id=event.id,
            reminders=local.reminders if local else [],
            cancellation_reason=local.cancellation_reason if local else None,
            cancellation_penalty=local.cancellation_penalty if local else None,
            patient_name=patient.name if patient else None,
            patient_phone=patient.phone if patient else None,
            doctor_name=doctor.name,
            doctor_specialization=doctor.specialization,
            source="remote",
        )

    async def _stamp_sync(self, doctor_id: str, when: datetime) -> None:
        credential = await self.credentials.get_active(doctor_id)
        if credential is None:
            return
        credential.last_sync = when
        credential.next_sync = when + timedelta(minutes=self.settings.SYNC_INTERVAL_MINUTES)
        await self.credentials.save(credential)
