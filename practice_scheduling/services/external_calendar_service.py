"""
External Calendar Service
Authenticated event CRUD and free/busy queries against Google Calendar
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from practice_scheduling.calendar.oauth_manager import CalendarOAuthManager
from practice_scheduling.config import CalendarSettings
from practice_scheduling.exceptions import (
    AuthExpiredError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from practice_scheduling.models.scheduling import (
    Appointment,
    AvailabilitySlot,
    BusyInterval,
    ExternalEvent,
    FreeBusyResult,
)
from practice_scheduling.resilience import with_retry
from practice_scheduling.services.audit_logger import AuditCategory, AuditLevel, AuditLogger
from practice_scheduling.services.external_timeouts import calendar_timeout
from practice_scheduling.utils.timezone_utils import get_zone, parse_rfc3339, to_local, to_rfc3339

logger = logging.getLogger(__name__)

EVENT_SOURCE = "practice_scheduling"
PAGE_SIZE = 250


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _parse_boundary(boundary: Any, default_tz: Optional[str]) -> Tuple[datetime, bool]:
    if not isinstance(boundary, dict):
        raise ValidationError("Event boundary is not an object")
    date_time = boundary.get('dateTime')
    day_value = boundary.get('date')
    tz_name = boundary.get('timeZone') if isinstance(boundary.get('timeZone'), str) else None
    tz_name = tz_name or default_tz
    if date_time:
        if not isinstance(date_time, str):
            raise ValidationError("Event dateTime is not a string")
        value = parse_rfc3339(date_time)
        if value.tzinfo is None:
            value = value.replace(tzinfo=get_zone(tz_name or "UTC"))
        return value, False
    if day_value:
        if not isinstance(day_value, str):
            raise ValidationError("Event date is not a string")
        day = date.fromisoformat(day_value)
        zone = get_zone(tz_name) if tz_name else timezone.utc
        return datetime.combine(day, time(0), tzinfo=zone), True
    raise ValidationError("Event boundary has neither dateTime nor date")


def parse_event(raw: Dict[str, Any]) -> ExternalEvent:
    """
    Normalize a Google Calendar event resource

    Raises:
        ValidationError: If the event lacks an id or a usable start/end
    """
    if not isinstance(raw, dict) or not raw.get('id'):
        raise ValidationError("Event has no id")

    time_zone = _as_dict(raw.get('start')).get('timeZone')
    if not isinstance(time_zone, str):
        time_zone = None
    try:
        start, all_day = _parse_boundary(raw.get('start'), time_zone)
        end, _ = _parse_boundary(raw.get('end'), time_zone)
    except (TypeError, ValueError, AttributeError) as e:
        raise ValidationError(f"Event {raw['id']} has an invalid start/end: {e}")
    except ValidationError as e:
        raise ValidationError(f"Event {raw['id']}: {e.message}")

    if end < start:
        raise ValidationError(f"Event {raw['id']} ends before it starts")

    overrides = _as_dict(raw.get('reminders')).get('overrides')
    overrides = [
        int(o['minutes'])
        for o in (overrides if isinstance(overrides, list) else [])
        if isinstance(o, dict) and isinstance(o.get('minutes'), int)
    ]
    private = _as_dict(_as_dict(raw.get('extendedProperties')).get('private'))

    try:
        return ExternalEvent(
            id=raw['id'],
            title=raw.get('summary') or "",
            description=raw.get('description'),
            start=start,
            end=end,
            time_zone=time_zone,
            all_day=all_day,
            transparent=raw.get('transparency') == 'transparent',
            status=raw.get('status') or 'confirmed',
            html_link=raw.get('htmlLink'),
            reminder_overrides=overrides,
            private_properties={str(k): str(v) for k, v in private.items()},
        )
    except PydanticValidationError as e:
        raise ValidationError(f"Event {raw['id']} has invalid fields: {e.error_count()} errors")


class ExternalCalendarGateway:
    """Calendar API client bound to the OAuth manager's fresh tokens"""

    def __init__(
        self,
        settings: CalendarSettings,
        oauth_manager: CalendarOAuthManager,
        audit: Optional[AuditLogger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.oauth = oauth_manager
        self.audit = audit or oauth_manager.audit
        self.http = http_client or httpx.AsyncClient(timeout=calendar_timeout(settings))
        # Reads are idempotent and retried on transient upstream failures
        self._read = with_retry(
            max_attempts=settings.REMOTE_RETRY_ATTEMPTS,
            delay=settings.REMOTE_RETRY_DELAY_SECONDS,
            retry_on=(UpstreamUnavailableError,),
        )(self._request)

    parse_event = staticmethod(parse_event)

    def build_event_body(
        self,
        appointment: Appointment,
        time_zone: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Google event resource for an appointment; description carries the notes verbatim."""
        tz = time_zone or self.settings.DEFAULT_TIMEZONE
        return {
            'summary': summary or appointment.title or f"Appointment ({appointment.type.value})",
            'description': appointment.notes or "",
            'start': {
                'dateTime': to_local(appointment.start_time, tz).isoformat(),
                'timeZone': tz,
            },
            'end': {
                'dateTime': to_local(appointment.end_time, tz).isoformat(),
                'timeZone': tz,
            },
            'transparency': 'opaque',
            'reminders': {
                'useDefault': False,
                'overrides': [
                    {'method': 'popup', 'minutes': minutes}
                    for minutes in self.settings.REMINDER_OVERRIDE_MINUTES
                ],
            },
            'extendedProperties': {
                'private': {
                    'appointment_id': appointment.id,
                    'doctor_id': appointment.doctor_id,
                    'appointment_type': appointment.type.value,
                    'source': EVENT_SOURCE,
                }
            },
        }

    async def create_event(
        self,
        doctor_id: str,
        appointment: Appointment,
        time_zone: Optional[str] = None,
    ) -> ExternalEvent:
        """Insert a new event. Not idempotent: every call creates a new remote id."""
        body = self.build_event_body(appointment, time_zone)
        try:
            path = self._events_path(await self._calendar_id(doctor_id))
            created = await self._request(doctor_id, 'POST', path, json=body)
            event = parse_event(created)
        except Exception as e:
            await self._audit_mutation("calendar_event_created", doctor_id, appointment.id, error=e)
            raise

        await self._audit_mutation("calendar_event_created", doctor_id, appointment.id, event_id=event.id)
        logger.info(f"Created calendar event {event.id} for appointment {appointment.id}")
        return event

    async def update_event(
        self,
        doctor_id: str,
        event_id: str,
        appointment: Appointment,
        time_zone: Optional[str] = None,
    ) -> ExternalEvent:
        """Replace an existing event with the appointment's current state."""
        body = self.build_event_body(appointment, time_zone)
        try:
            path = f"{self._events_path(await self._calendar_id(doctor_id))}/{quote(event_id, safe='')}"
            updated = await self._request(doctor_id, 'PUT', path, json=body)
            event = parse_event(updated)
        except Exception as e:
            await self._audit_mutation("calendar_event_updated", doctor_id, appointment.id, event_id=event_id, error=e)
            raise

        await self._audit_mutation("calendar_event_updated", doctor_id, appointment.id, event_id=event_id)
        logger.info(f"Updated calendar event {event_id} for appointment {appointment.id}")
        return event

    async def delete_event(self, doctor_id: str, event_id: str) -> bool:
        """
        Delete an event

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            path = f"{self._events_path(await self._calendar_id(doctor_id))}/{quote(event_id, safe='')}"
            await self._request(doctor_id, 'DELETE', path)
        except NotFoundError:
            logger.info(f"Calendar event {event_id} already deleted")
            await self._audit_mutation("calendar_event_deleted", doctor_id, None, event_id=event_id,
                                       extra={'already_deleted': True})
            return False
        except Exception as e:
            await self._audit_mutation("calendar_event_deleted", doctor_id, None, event_id=event_id, error=e)
            raise

        await self._audit_mutation("calendar_event_deleted", doctor_id, None, event_id=event_id)
        return True

    async def list_raw_events(self, doctor_id: str, time_min: datetime, time_max: datetime) -> List[Dict[str, Any]]:
        """Event resources in [time_min, time_max), following pagination."""
        path = self._events_path(await self._calendar_id(doctor_id))
        params = {
            'timeMin': to_rfc3339(time_min),
            'timeMax': to_rfc3339(time_max),
            'singleEvents': 'true',
            'orderBy': 'startTime',
            'maxResults': str(PAGE_SIZE),
        }

        items: List[Dict[str, Any]] = []
        while True:
            page = await self._read(doctor_id, 'GET', path, params=params)
            items.extend(page.get('items') or [])
            page_token = page.get('nextPageToken')
            if not page_token:
                break
            params = {**params, 'pageToken': page_token}
        return items

    async def list_events(self, doctor_id: str, time_min: datetime, time_max: datetime) -> List[ExternalEvent]:
        """Normalized events; malformed entries are dropped with a warning."""
        events = []
        for raw in await self.list_raw_events(doctor_id, time_min, time_max):
            try:
                events.append(parse_event(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed calendar event for doctor {doctor_id}: {e.message}")
        return events

    async def find_blocking_events(self, doctor_id: str, start: datetime, end: datetime) -> List[ExternalEvent]:
        """Opaque, non-cancelled events overlapping [start, end)."""
        events = await self.list_events(doctor_id, start, end)
        return [e for e in events if e.blocks_time and e.start < end and e.end > start]

    async def check_free_busy(
        self,
        doctor_id: str,
        time_min: datetime,
        time_max: datetime,
        step_minutes: Optional[int] = None,
    ) -> FreeBusyResult:
        """Busy intervals from the freeBusy endpoint plus a stepped free/busy timeline."""
        calendar_id = await self._calendar_id(doctor_id)
        body = {
            'timeMin': to_rfc3339(time_min),
            'timeMax': to_rfc3339(time_max),
            'items': [{'id': calendar_id}],
        }
        response = await self._read(doctor_id, 'POST', '/freeBusy', json=body)

        busy = []
        calendar = (response.get('calendars') or {}).get(calendar_id) or {}
        for interval in calendar.get('busy') or []:
            try:
                busy.append(BusyInterval(
                    start=parse_rfc3339(interval['start']),
                    end=parse_rfc3339(interval['end']),
                ))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring malformed busy interval for doctor {doctor_id}: {e}")
        busy.sort(key=lambda b: b.start)

        step = timedelta(minutes=step_minutes or self.settings.SLOT_STEP_MINUTES)
        timeline = []
        cursor = time_min
        while cursor < time_max:
            slot_end = min(cursor + step, time_max)
            blocked = any(b.start < slot_end and b.end > cursor for b in busy)
            timeline.append(AvailabilitySlot(start=cursor, end=slot_end, available=not blocked))
            cursor = slot_end

        return FreeBusyResult(busy=busy, timeline=timeline)

    async def _calendar_id(self, doctor_id: str) -> str:
        credential = await self.oauth.ensure_fresh_token(doctor_id)
        return credential.calendar_id or "primary"

    @staticmethod
    def _events_path(calendar_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}/events"

    async def _request(
        self,
        doctor_id: str,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        _retry_auth: bool = True,
    ) -> Dict[str, Any]:
        credential = await self.oauth.ensure_fresh_token(doctor_id)
        headers = {'Authorization': f"{credential.token_type} {credential.access_token}"}
        url = f"{self.settings.GOOGLE_CALENDAR_API}{path}"

        try:
            response = await asyncio.wait_for(
                self.http.request(method, url, params=params, json=json, headers=headers),
                timeout=self.settings.REMOTE_CALL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError(f"Calendar API {method} {path} timed out", doctor_id=doctor_id)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Calendar API unreachable: {e}", doctor_id=doctor_id)

        status = response.status_code
        if status == 401:
            if _retry_auth:
                # Token rejected before its recorded expiry; force one refresh
                await self.oauth.refresh_access_token(doctor_id)
                return await self._request(doctor_id, method, path, params=params, json=json, _retry_auth=False)
            raise AuthExpiredError("Calendar API rejected the access token", doctor_id=doctor_id)
        if status in (404, 410):
            raise NotFoundError("Calendar resource", path)
        if status == 429 or status >= 500:
            raise UpstreamUnavailableError(
                f"Calendar API returned {status}", doctor_id=doctor_id, status_code=status
            )
        if status >= 400:
            raise ValidationError(f"Calendar API rejected {method} {path}: {status} {response.text[:200]}",
                                  doctor_id=doctor_id)

        if status == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise UpstreamUnavailableError("Calendar API returned a non-JSON body", doctor_id=doctor_id)

    async def _audit_mutation(
        self,
        action: str,
        doctor_id: str,
        appointment_id: Optional[str],
        event_id: Optional[str] = None,
        error: Optional[BaseException] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        details: Dict[str, Any] = {'event_id': event_id, 'appointment_id': appointment_id}
        if extra:
            details.update(extra)
        if error is not None:
            details['error'] = str(error)
            details['error_type'] = type(error).__name__
        await self.audit.log_event(
            AuditCategory.CALENDAR,
            action,
            outcome="failure" if error is not None else "success",
            level=AuditLevel.ERROR if error is not None else AuditLevel.INFO,
            doctor_id=doctor_id,
            resource_id=event_id,
            resource_type="calendar_event",
            details=details,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
