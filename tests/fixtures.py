"""
Test fixtures for the practice scheduling core
"""

import asyncio
import json
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx

from practice_scheduling.app_factory import SchedulingCore
from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.memory import (
    InMemoryAppointmentStore,
    InMemoryCredentialStore,
    InMemoryDoctorDirectory,
)
from practice_scheduling.models.scheduling import (
    Appointment,
    AppointmentStatus,
    CancellationPolicy,
    DoctorProfile,
    ExternalCalendarCredential,
    PatientSummary,
    WorkingHoursPolicy,
)
from practice_scheduling.services.audit_logger import AuditLogger, InMemoryAuditSink
from practice_scheduling.utils.timezone_utils import parse_rfc3339

# Sample test data
TEST_DOCTOR_ID = 'doctor-001'
TEST_PATIENT_ID = 'patient-001'
MONDAY = date(2026, 10, 19)
SATURDAY = date(2026, 10, 24)
NOW = datetime(2026, 10, 12, 12, 0, tzinfo=timezone.utc)

TOKEN_URI = "https://oauth2.googleapis.com/token"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"


def at(hour: int, minute: int = 0, day: date = MONDAY) -> datetime:
    """UTC instant on the given day"""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class FixedClock:
    """Controllable clock injected wherever components read 'now'"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_settings(**overrides) -> CalendarSettings:
    values = {
        'GOOGLE_CALENDAR_CLIENT_ID': 'test-client-id',
        'GOOGLE_CALENDAR_CLIENT_SECRET': 'test-client-secret',
        'GOOGLE_CALENDAR_REDIRECT_URI': 'http://localhost:3002/api/doctors/calendar/callback',
        'REMOTE_CALL_TIMEOUT_SECONDS': 2.0,
        'REMOTE_RETRY_DELAY_SECONDS': 0.0,
        'SUPABASE_URL': None,
        'SUPABASE_SERVICE_ROLE_KEY': None,
    }
    values.update(overrides)
    return CalendarSettings(_env_file=None, **values)


def make_doctor(**kwargs) -> DoctorProfile:
    """Create a test doctor working 09:00-18:00 UTC on weekdays"""
    return DoctorProfile(
        id=kwargs.get('id', TEST_DOCTOR_ID),
        name=kwargs.get('name', 'Dra. Test'),
        specialization=kwargs.get('specialization', 'Psicología'),
        is_active=kwargs.get('is_active', True),
        working_hours=kwargs.get('working_hours', WorkingHoursPolicy(timezone=kwargs.get('timezone', 'UTC'))),
        cancellation_policy=kwargs.get('cancellation_policy', CancellationPolicy(hours_notice=24, penalty_percentage=50)),
    )


def make_patient(**kwargs) -> PatientSummary:
    return PatientSummary(
        id=kwargs.get('id', TEST_PATIENT_ID),
        doctor_id=kwargs.get('doctor_id', TEST_DOCTOR_ID),
        name=kwargs.get('name', 'Juan Pérez'),
        phone=kwargs.get('phone', '+56912345678'),
        is_active=kwargs.get('is_active', True),
    )


def make_appointment(start: datetime, duration: int = 60, **kwargs) -> Appointment:
    return Appointment(
        id=kwargs.get('id', str(uuid.uuid4())),
        doctor_id=kwargs.get('doctor_id', TEST_DOCTOR_ID),
        patient_id=kwargs.get('patient_id', TEST_PATIENT_ID),
        start_time=start,
        duration_minutes=duration,
        status=kwargs.get('status', AppointmentStatus.SCHEDULED),
        title=kwargs.get('title'),
        notes=kwargs.get('notes'),
        external_event_id=kwargs.get('external_event_id'),
    )


def make_credential(now: datetime = NOW, expired: bool = False, **kwargs) -> ExternalCalendarCredential:
    expiry = now - timedelta(minutes=5) if expired else now + timedelta(hours=1)
    return ExternalCalendarCredential(
        doctor_id=kwargs.get('doctor_id', TEST_DOCTOR_ID),
        access_token=kwargs.get('access_token', 'access-token-1'),
        refresh_token=kwargs.get('refresh_token', 'refresh-token-1'),
        expiry_date=kwargs.get('expiry_date', expiry),
        calendar_id=kwargs.get('calendar_id', 'primary'),
        calendar_name=kwargs.get('calendar_name', 'Primary Calendar'),
        is_active=kwargs.get('is_active', True),
        last_sync=kwargs.get('last_sync'),
        next_sync=kwargs.get('next_sync'),
    )


def make_event(event_id: str, start: datetime, end: datetime, **kwargs) -> Dict[str, Any]:
    """Google Calendar event resource"""
    event = {
        'id': event_id,
        'status': kwargs.get('status', 'confirmed'),
        'summary': kwargs.get('summary', f'Event {event_id}'),
        'start': {'dateTime': start.isoformat(), 'timeZone': 'UTC'},
        'end': {'dateTime': end.isoformat(), 'timeZone': 'UTC'},
    }
    if 'description' in kwargs:
        event['description'] = kwargs['description']
    if kwargs.get('transparent'):
        event['transparency'] = 'transparent'
    if 'private' in kwargs:
        event['extendedProperties'] = {'private': kwargs['private']}
    return event


class FakeGoogle:
    """
    In-memory Google OAuth + Calendar API served through httpx.MockTransport
    """

    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.busy: List[Dict[str, str]] = []
        self.requests: List[httpx.Request] = []
        self.token_requests: List[Dict[str, str]] = []
        self.token_status = 200
        self.token_body: Dict[str, Any] = {}
        self.calendar_status: Optional[int] = None
        self.calendar_exception: Optional[Exception] = None
        self.calendar_delay = 0.0
        self.page_size: Optional[int] = None
        self._counter = 0

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def grant(self, access_token: str = 'new-access-token', expires_in: int = 3600, refresh_token: Optional[str] = None):
        self.token_status = 200
        self.token_body = {'access_token': access_token, 'expires_in': expires_in, 'token_type': 'Bearer'}
        if refresh_token:
            self.token_body['refresh_token'] = refresh_token

    def reject(self, error: str = 'invalid_grant', status: int = 400):
        self.token_status = status
        self.token_body = {'error': error}

    @property
    def calendar_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host == 'www.googleapis.com']

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url).startswith(TOKEN_URI):
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            return httpx.Response(self.token_status, json=self.token_body)

        if self.calendar_delay:
            await asyncio.sleep(self.calendar_delay)
        if self.calendar_exception is not None:
            raise self.calendar_exception
        if self.calendar_status is not None:
            return httpx.Response(self.calendar_status, json={'error': {'code': self.calendar_status}})

        path = request.url.path.replace('/calendar/v3', '', 1)
        if path == '/freeBusy':
            body = json.loads(request.content)
            calendar_id = body['items'][0]['id']
            return httpx.Response(200, json={'calendars': {calendar_id: {'busy': self.busy}}})

        parts = path.strip('/').split('/')
        # calendars/{calendar_id}/events[/{event_id}]
        if len(parts) == 3 and request.method == 'GET':
            return self._list(request)
        if len(parts) == 3 and request.method == 'POST':
            self._counter += 1
            event = json.loads(request.content)
            event['id'] = f'evt-{self._counter}'
            event['status'] = 'confirmed'
            self.events.append(event)
            return httpx.Response(200, json=event)
        if len(parts) == 4:
            event_id = parts[3]
            existing = next((e for e in self.events if e.get('id') == event_id), None)
            if existing is None:
                return httpx.Response(404, json={'error': {'code': 404}})
            if request.method == 'PUT':
                updated = json.loads(request.content)
                updated['id'] = event_id
                updated['status'] = 'confirmed'
                self.events[self.events.index(existing)] = updated
                return httpx.Response(200, json=updated)
            if request.method == 'DELETE':
                self.events.remove(existing)
                return httpx.Response(204)
        return httpx.Response(400, json={'error': 'unsupported'})

    def _list(self, request: httpx.Request) -> httpx.Response:
        time_min = parse_rfc3339(request.url.params['timeMin'])
        time_max = parse_rfc3339(request.url.params['timeMax'])
        items = []
        for event in self.events:
            try:
                start = parse_rfc3339(event['start']['dateTime'])
                end = parse_rfc3339(event['end']['dateTime'])
            except (KeyError, TypeError, ValueError):
                # Malformed entries are returned as-is
                items.append(event)
                continue
            if start < time_max and end > time_min:
                items.append(event)

        if self.page_size:
            offset = int(request.url.params.get('pageToken', '0'))
            page = items[offset:offset + self.page_size]
            body = {'items': page}
            if offset + self.page_size < len(items):
                body['nextPageToken'] = str(offset + self.page_size)
            return httpx.Response(200, json=body)
        return httpx.Response(200, json={'items': items})


def build_core(
    fake: Optional[FakeGoogle] = None,
    doctors: Optional[List[DoctorProfile]] = None,
    patients: Optional[List[PatientSummary]] = None,
    credentials: Optional[List[ExternalCalendarCredential]] = None,
    appointments: Optional[List[Appointment]] = None,
    clock: Optional[FixedClock] = None,
    settings: Optional[CalendarSettings] = None,
):
    """Wire a SchedulingCore over in-memory stores and a fake Google backend"""
    fake = fake or FakeGoogle()
    sink = InMemoryAuditSink()
    core = SchedulingCore(
        settings or make_settings(),
        InMemoryAppointmentStore(appointments),
        InMemoryCredentialStore(credentials),
        InMemoryDoctorDirectory(
            doctors if doctors is not None else [make_doctor()],
            patients if patients is not None else [make_patient()],
        ),
        audit=AuditLogger([sink]),
        http_client=fake.client(),
        clock=clock or FixedClock(),
    )
    return core, fake, sink
