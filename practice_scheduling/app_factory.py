"""
Scheduling core wiring

SchedulingCore assembles the stores, token manager, calendar gateway and
services around one CalendarSettings instance and exposes the operations
consumed by the HTTP layer and background jobs.
"""

import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional

import httpx
import redis

from practice_scheduling.calendar.oauth_manager import CalendarOAuthManager
from practice_scheduling.config import CalendarSettings, get_settings, validate_environment
from practice_scheduling.db.memory import (
    InMemoryAppointmentStore,
    InMemoryCredentialStore,
    InMemoryDoctorDirectory,
)
from practice_scheduling.db.stores import AppointmentStore, CredentialStore, DoctorDirectory
from practice_scheduling.models.scheduling import (
    AppointmentListing,
    AppointmentStatus,
    AppointmentUpdate,
    AppointmentView,
    AvailabilityDecision,
    AvailabilitySlot,
    ConnectionStatus,
    CreateAppointmentRequest,
    ExternalCalendarCredential,
    FreeBusyResult,
    OAuthExchangeResult,
    RecordConsultation,
    SyncResult,
)
from practice_scheduling.services.appointment_service import AppointmentService
from practice_scheduling.services.audit_logger import AuditLogger, AuditSink, InMemoryAuditSink, SupabaseAuditSink
from practice_scheduling.services.availability_service import AvailabilityService
from practice_scheduling.services.calendar_sync_service import CalendarSyncService
from practice_scheduling.services.external_calendar_service import ExternalCalendarGateway
from practice_scheduling.services.locks import LocalRefreshLock, RedisRefreshLock, RefreshLock
from practice_scheduling.workers.calendar_sync_worker import CalendarSyncWorker

logger = logging.getLogger(__name__)


class SchedulingCore:
    """Facade over availability, booking, calendar connection and sync"""

    def __init__(
        self,
        settings: CalendarSettings,
        appointments: AppointmentStore,
        credentials: CredentialStore,
        directory: DoctorDirectory,
        audit: Optional[AuditLogger] = None,
        refresh_lock: Optional[RefreshLock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.appointments_store = appointments
        self.credentials = credentials
        self.directory = directory
        self.audit = audit or AuditLogger()

        self.oauth = CalendarOAuthManager(
            settings, credentials, directory,
            refresh_lock=refresh_lock or LocalRefreshLock(),
            audit=self.audit,
            http_client=http_client,
            clock=clock,
        )
        self.gateway = ExternalCalendarGateway(settings, self.oauth, audit=self.audit, http_client=http_client)
        self.availability = AvailabilityService(
            settings, appointments, directory, credentials, gateway=self.gateway, audit=self.audit
        )
        self.appointments = AppointmentService(
            settings, appointments, directory, self.availability, credentials,
            gateway=self.gateway, audit=self.audit, clock=clock,
        )
        self.sync = CalendarSyncService(
            settings, appointments, credentials, directory, self.gateway, audit=self.audit, clock=clock
        )

    # Availability

    async def check_availability(self, doctor_id: str, start: datetime, duration_minutes: int) -> AvailabilityDecision:
        return await self.availability.check_availability(doctor_id, start, duration_minutes)

    async def is_available(self, doctor_id: str, start: datetime, duration_minutes: int) -> bool:
        return await self.availability.is_available(doctor_id, start, duration_minutes)

    async def get_available_slots(
        self, doctor_id: str, day: date, duration_minutes: Optional[int] = None
    ) -> List[AvailabilitySlot]:
        return await self.availability.get_available_slots(doctor_id, day, duration_minutes)

    async def get_doctor_availability(
        self, doctor_id: str, start_date: date, end_date: date, duration_minutes: Optional[int] = None
    ) -> Dict[str, List[AvailabilitySlot]]:
        return await self.availability.get_doctor_availability(doctor_id, start_date, end_date, duration_minutes)

    async def check_free_busy(self, doctor_id: str, time_min: datetime, time_max: datetime) -> FreeBusyResult:
        return await self.gateway.check_free_busy(doctor_id, time_min, time_max)

    # Appointments

    async def create_appointment(self, request: CreateAppointmentRequest) -> AppointmentView:
        return await self.appointments.create_appointment(request)

    async def update_appointment(
        self, appointment_id: str, doctor_id: str, update: AppointmentUpdate
    ) -> AppointmentView:
        return await self.appointments.update_appointment(appointment_id, doctor_id, update)

    async def cancel_appointment(
        self, appointment_id: str, doctor_id: str, reason: Optional[str] = None
    ) -> AppointmentView:
        return await self.appointments.cancel_appointment(appointment_id, doctor_id, reason)

    async def confirm_appointment(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        return await self.appointments.confirm_appointment(appointment_id, doctor_id)

    async def complete_appointment(
        self, appointment_id: str, doctor_id: str, consultation: Optional[RecordConsultation] = None
    ) -> AppointmentView:
        return await self.appointments.complete_appointment(appointment_id, doctor_id, consultation)

    async def mark_no_show(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        return await self.appointments.mark_no_show(appointment_id, doctor_id)

    async def get_appointment(self, appointment_id: str, doctor_id: str) -> AppointmentView:
        return await self.appointments.get_appointment(appointment_id, doctor_id)

    async def list_appointments(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        statuses: Optional[Iterable[AppointmentStatus]] = None,
    ) -> List[AppointmentView]:
        return await self.appointments.list_appointments(doctor_id, start, end, statuses)

    async def get_appointments_in_range(
        self, doctor_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> AppointmentListing:
        return await self.sync.list_appointments_in_range(doctor_id, start, end)

    # Calendar connection

    def generate_auth_url(self, doctor_id: str) -> str:
        return self.oauth.generate_auth_url(doctor_id)

    async def exchange_code_for_tokens(self, code: str, state: str) -> OAuthExchangeResult:
        return await self.oauth.exchange_code(code, state)

    async def get_calendar_connection_status(self, doctor_id: str) -> ConnectionStatus:
        return await self.oauth.get_connection_status(doctor_id)

    async def disconnect_calendar(self, doctor_id: str) -> None:
        await self.oauth.disconnect(doctor_id)

    async def refresh_access_token(self, doctor_id: str) -> ExternalCalendarCredential:
        return await self.oauth.refresh_access_token(doctor_id)

    async def sync_existing_appointments(self, doctor_id: str) -> SyncResult:
        return await self.sync.sync_appointments(doctor_id)

    def create_sync_worker(self) -> CalendarSyncWorker:
        return CalendarSyncWorker(self.settings, self.sync, self.credentials)

    async def aclose(self) -> None:
        await self.gateway.aclose()
        if self.oauth.http is not self.gateway.http:
            await self.oauth.aclose()


def build_scheduling_core(
    settings: Optional[CalendarSettings] = None,
    *,
    appointments: Optional[AppointmentStore] = None,
    credentials: Optional[CredentialStore] = None,
    directory: Optional[DoctorDirectory] = None,
    audit_sinks: Optional[List[AuditSink]] = None,
    use_redis_lock: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SchedulingCore:
    """
    Build a SchedulingCore from settings

    Stores default to Supabase when SUPABASE_URL and the service key are set,
    otherwise to the in-memory implementations.
    """
    settings = settings or get_settings()
    if not validate_environment(settings):
        logger.warning("Google Calendar OAuth is not fully configured; calendar features will fail")

    supabase = None
    if settings.SUPABASE_URL and settings.SUPABASE_SERVICE_ROLE_KEY and (
        appointments is None or credentials is None or directory is None or audit_sinks is None
    ):
        from practice_scheduling.db.supabase_store import (
            SupabaseAppointmentStore,
            SupabaseCredentialStore,
            SupabaseDoctorDirectory,
            create_supabase_client,
        )
        supabase = create_supabase_client(settings)
        appointments = appointments or SupabaseAppointmentStore(supabase)
        credentials = credentials or SupabaseCredentialStore(supabase)
        directory = directory or SupabaseDoctorDirectory(supabase)

    if audit_sinks is None:
        audit_sinks = [SupabaseAuditSink(supabase)] if supabase is not None else [InMemoryAuditSink()]

    refresh_lock: RefreshLock = LocalRefreshLock()
    if use_redis_lock:
        refresh_lock = RedisRefreshLock(redis.from_url(settings.REDIS_URL), ttl_ms=settings.REFRESH_LOCK_TTL_MS)

    return SchedulingCore(
        settings,
        appointments or InMemoryAppointmentStore(),
        credentials or InMemoryCredentialStore(),
        directory or InMemoryDoctorDirectory(),
        audit=AuditLogger(audit_sinks),
        refresh_lock=refresh_lock,
        http_client=http_client,
        clock=clock,
    )
