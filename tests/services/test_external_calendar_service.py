"""
Tests for the external calendar gateway
"""

import json

import httpx
import pytest

from practice_scheduling.exceptions import (
    AuthExpiredError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from practice_scheduling.services.external_calendar_service import parse_event
from tests.fixtures import FakeGoogle, at, build_core, make_appointment, make_credential, make_event, make_settings


@pytest.fixture
def fake():
    return FakeGoogle()


@pytest.fixture
def connected(fake):
    core, _, sink = build_core(fake=fake, credentials=[make_credential()])
    return core, sink


class TestParseEvent:

    def test_timed_event(self):
        event = parse_event(make_event('e1', at(10), at(11), description='Control'))

        assert event.id == 'e1'
        assert event.start == at(10)
        assert event.end == at(11)
        assert event.duration_minutes == 60
        assert event.description == 'Control'
        assert event.blocks_time

    def test_nullable_description(self):
        assert parse_event(make_event('e1', at(10), at(11))).description is None

    def test_all_day_event(self):
        event = parse_event({'id': 'e2', 'start': {'date': '2026-10-19'}, 'end': {'date': '2026-10-20'}})

        assert event.all_day
        assert event.duration_minutes == 24 * 60

    def test_reminders_and_private_properties(self):
        raw = make_event('e3', at(10), at(11), private={'appointment_id': 'a-1'})
        raw['reminders'] = {'useDefault': False, 'overrides': [{'method': 'popup', 'minutes': 120}]}

        event = parse_event(raw)

        assert event.reminder_overrides == [120]
        assert event.private_properties == {'appointment_id': 'a-1'}

    def test_malformed_events_raise_validation_error(self):
        bad = [
            {'summary': 'no id'},
            {'id': 'x', 'start': {'dateTime': 'yesterday'}, 'end': {'dateTime': 'today'}},
            {'id': 'y', 'start': {}, 'end': {'date': '2026-10-19'}},
            make_event('z', at(11), at(10)),
        ]
        for raw in bad:
            with pytest.raises(ValidationError):
                parse_event(raw)

    def test_wrongly_typed_fields_raise_validation_error(self):
        bad = [
            {'id': 'a', 'start': '2026-10-19T12:00:00Z', 'end': '2026-10-19T13:00:00Z'},
            {'id': 'b', 'start': {'dateTime': 12345}, 'end': {'dateTime': 12346}},
            {'id': 'c', 'start': {'date': 20261019}, 'end': {'date': 20261020}},
            {**make_event('d', at(10), at(11)), 'summary': ['not', 'text']},
        ]
        for raw in bad:
            with pytest.raises(ValidationError):
                parse_event(raw)

    def test_odd_reminders_and_properties_ignored(self):
        raw = make_event('e4', at(10), at(11))
        raw['reminders'] = 'popup'
        raw['extendedProperties'] = {'private': ['appointment_id']}

        event = parse_event(raw)

        assert event.reminder_overrides == []
        assert event.private_properties == {}


class TestEventCrud:

    async def test_create_event_body(self, connected, fake):
        core, sink = connected
        appointment = make_appointment(at(10), 45, title='Consulta', notes='Primera sesión')

        event = await core.gateway.create_event('doctor-001', appointment, 'America/Santiago')

        assert event.id == 'evt-1'
        body = fake.events[0]
        assert body['summary'] == 'Consulta'
        assert body['description'] == 'Primera sesión'
        assert body['start']['timeZone'] == 'America/Santiago'
        assert body['reminders'] == {
            'useDefault': False,
            'overrides': [{'method': 'popup', 'minutes': 1440}, {'method': 'popup', 'minutes': 120}],
        }
        assert body['extendedProperties']['private']['appointment_id'] == appointment.id
        request = fake.calendar_requests[0]
        assert request.headers['Authorization'] == 'Bearer access-token-1'
        assert request.url.path == '/calendar/v3/calendars/primary/events'
        assert sink.find('calendar_event_created')[0].outcome == 'success'

    async def test_create_is_not_idempotent(self, connected, fake):
        core, _ = connected
        appointment = make_appointment(at(10))

        first = await core.gateway.create_event('doctor-001', appointment)
        second = await core.gateway.create_event('doctor-001', appointment)

        assert first.id != second.id
        assert len(fake.events) == 2

    async def test_update_event(self, connected, fake):
        core, sink = connected
        appointment = make_appointment(at(10), notes='before')
        created = await core.gateway.create_event('doctor-001', appointment)

        appointment.notes = 'after'
        updated = await core.gateway.update_event('doctor-001', created.id, appointment)

        assert updated.description == 'after'
        assert fake.events[0]['description'] == 'after'
        assert sink.find('calendar_event_updated')

    async def test_update_missing_event(self, connected):
        core, sink = connected
        with pytest.raises(NotFoundError):
            await core.gateway.update_event('doctor-001', 'missing', make_appointment(at(10)))
        assert sink.find('calendar_event_updated')[0].outcome == 'failure'

    async def test_delete_is_idempotent(self, connected, fake):
        core, sink = connected
        created = await core.gateway.create_event('doctor-001', make_appointment(at(10)))

        assert await core.gateway.delete_event('doctor-001', created.id) is True
        assert await core.gateway.delete_event('doctor-001', created.id) is False
        assert fake.events == []
        assert len(sink.find('calendar_event_deleted')) == 2

    async def test_failed_mutation_is_audited(self, connected, fake):
        core, sink = connected
        fake.calendar_status = 503

        with pytest.raises(UpstreamUnavailableError):
            await core.gateway.create_event('doctor-001', make_appointment(at(10)))

        audited = sink.find('calendar_event_created')
        assert audited[0].outcome == 'failure'
        assert audited[0].details['error_type'] == 'UpstreamUnavailableError'


class TestErrorMapping:

    async def test_timeout_is_upstream_unavailable(self, fake):
        fake.calendar_delay = 0.5
        settings = make_settings(REMOTE_CALL_TIMEOUT_SECONDS=0.05, REMOTE_RETRY_ATTEMPTS=1)
        core, _, _ = build_core(fake=fake, credentials=[make_credential()], settings=settings)

        with pytest.raises(UpstreamUnavailableError):
            await core.gateway.list_events('doctor-001', at(0), at(23))

    async def test_transport_error_is_upstream_unavailable(self, connected, fake):
        core, _ = connected
        fake.calendar_exception = httpx.ConnectError("refused")

        with pytest.raises(UpstreamUnavailableError):
            await core.gateway.list_events('doctor-001', at(0), at(23))

    async def test_reads_are_retried(self, fake):
        settings = make_settings(REMOTE_RETRY_ATTEMPTS=3)
        core, _, _ = build_core(fake=fake, credentials=[make_credential()], settings=settings)
        fake.calendar_status = 503

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await core.gateway.list_events('doctor-001', at(0), at(23))

        assert exc_info.value.status_code == 503
        assert len(fake.calendar_requests) == 3

    async def test_rejected_token_refreshed_once(self, connected, fake):
        core, _ = connected
        fake.grant(access_token='access-token-2')
        fake.calendar_status = 401

        with pytest.raises(AuthExpiredError):
            await core.gateway.list_events('doctor-001', at(0), at(23))

        assert len(fake.token_requests) == 1
        assert len(fake.calendar_requests) == 2
        assert fake.calendar_requests[1].headers['Authorization'] == 'Bearer access-token-2'

    async def test_no_credential(self):
        core, _, _ = build_core()
        with pytest.raises(NotFoundError):
            await core.gateway.list_events('doctor-001', at(0), at(23))


class TestListing:

    async def test_malformed_events_filtered(self, connected, fake):
        core, _ = connected
        fake.events.extend([
            make_event('ok-1', at(10), at(11)),
            {'id': 'broken', 'start': {'dateTime': 'not-a-date'}, 'end': {}},
            make_event('ok-2', at(12), at(13)),
        ])

        events = await core.gateway.list_events('doctor-001', at(0), at(23))

        assert [e.id for e in events] == ['ok-1', 'ok-2']

    async def test_structurally_broken_events_filtered(self, connected, fake):
        core, _ = connected
        fake.events.extend([
            make_event('ok-1', at(10), at(11)),
            {'id': 'odd-1', 'start': '2026-10-19T12:00:00Z', 'end': '2026-10-19T13:00:00Z'},
            {'id': 'odd-2', 'start': {'dateTime': 12345}, 'end': {'dateTime': 12346}},
        ])

        events = await core.gateway.list_events('doctor-001', at(0), at(23))

        assert [e.id for e in events] == ['ok-1']

    async def test_pagination_followed(self, connected, fake):
        core, _ = connected
        fake.page_size = 2
        fake.events.extend(make_event(f'e{h}', at(h), at(h, 30)) for h in range(9, 14))

        raw = await core.gateway.list_raw_events('doctor-001', at(0), at(23))

        assert [e['id'] for e in raw] == ['e9', 'e10', 'e11', 'e12', 'e13']
        assert len(fake.calendar_requests) == 3

    async def test_query_window_sent_as_utc(self, connected, fake):
        core, _ = connected
        await core.gateway.list_raw_events('doctor-001', at(8), at(20))

        params = fake.calendar_requests[0].url.params
        assert params['timeMin'] == '2026-10-19T08:00:00Z'
        assert params['timeMax'] == '2026-10-19T20:00:00Z'
        assert params['singleEvents'] == 'true'


class TestFreeBusy:

    async def test_busy_intervals_and_timeline(self, connected, fake):
        core, _ = connected
        fake.busy = [{'start': '2026-10-19T10:00:00Z', 'end': '2026-10-19T11:00:00Z'}]

        result = await core.check_free_busy('doctor-001', at(9), at(12))

        assert [(b.start, b.end) for b in result.busy] == [(at(10), at(11))]
        assert [s.available for s in result.timeline] == [True, True, False, False, True, True]
        request = fake.calendar_requests[0]
        assert request.url.path == '/calendar/v3/freeBusy'
        assert json.loads(request.content)['items'] == [{'id': 'primary'}]
