"""
Tests for the OAuth token manager
"""

import asyncio
import base64
import json
from datetime import timedelta
from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest

from practice_scheduling.calendar.oauth_manager import decode_state, encode_state
from practice_scheduling.exceptions import (
    AuthRevokedError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from practice_scheduling.services.locks import RedisRefreshLock
from tests.fixtures import NOW, FakeGoogle, FixedClock, build_core, make_credential, make_settings


class TestState:

    def test_round_trip(self):
        assert decode_state(encode_state('doctor-001')) == 'doctor-001'

    def test_missing_doctor_id_rejected(self):
        state = base64.urlsafe_b64encode(json.dumps({'other': 'x'}).encode()).decode()
        with pytest.raises(ValidationError):
            decode_state(state)

    def test_garbage_rejected(self):
        for state in ('', 'not base64 !!', base64.urlsafe_b64encode(b'[1, 2]').decode()):
            with pytest.raises(ValidationError):
                decode_state(state)


class TestAuthUrl:

    def test_requests_offline_access_with_forced_consent(self):
        core, _, _ = build_core()
        url = core.generate_auth_url('doctor-001')

        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert url.startswith('https://accounts.google.com/o/oauth2/v2/auth?')
        assert params['access_type'] == 'offline'
        assert params['prompt'] == 'consent'
        assert params['response_type'] == 'code'
        assert params['client_id'] == 'test-client-id'
        assert 'https://www.googleapis.com/auth/calendar' in params['scope'].split(' ')
        assert decode_state(params['state']) == 'doctor-001'

    def test_unconfigured_client_rejected(self):
        core, _, _ = build_core(settings=make_settings(GOOGLE_CALENDAR_CLIENT_ID=''))
        with pytest.raises(ValidationError):
            core.generate_auth_url('doctor-001')


class TestExchangeCode:

    async def test_stores_primary_calendar_credential(self):
        fake = FakeGoogle()
        fake.grant(access_token='access-1', expires_in=1800, refresh_token='refresh-1')
        core, _, sink = build_core(fake=fake)

        result = await core.exchange_code_for_tokens('auth-code', encode_state('doctor-001'))

        assert result.doctor_id == 'doctor-001'
        stored = await core.credentials.get('doctor-001')
        assert stored.access_token == 'access-1'
        assert stored.refresh_token == 'refresh-1'
        assert stored.expiry_date == NOW + timedelta(seconds=1800)
        assert stored.calendar_id == 'primary'
        assert stored.calendar_name == 'Primary Calendar'
        assert stored.last_sync == NOW
        assert stored.next_sync == NOW + timedelta(minutes=15)
        assert fake.token_requests[0]['grant_type'] == 'authorization_code'
        assert fake.token_requests[0]['code'] == 'auth-code'
        assert sink.find('calendar_connected')

    async def test_default_expiry_is_one_hour(self):
        fake = FakeGoogle()
        fake.token_body = {'access_token': 'a', 'refresh_token': 'r'}
        core, _, _ = build_core(fake=fake)

        result = await core.exchange_code_for_tokens('code', encode_state('doctor-001'))
        assert result.credential.expiry_date == NOW + timedelta(hours=1)

    async def test_unknown_doctor_rejected(self):
        fake = FakeGoogle()
        fake.grant(refresh_token='r')
        core, _, _ = build_core(fake=fake)

        with pytest.raises(NotFoundError):
            await core.exchange_code_for_tokens('code', encode_state('someone-else'))
        assert fake.token_requests == []

    async def test_missing_refresh_token_rejected(self):
        fake = FakeGoogle()
        fake.grant()
        core, _, _ = build_core(fake=fake)

        with pytest.raises(AuthRevokedError):
            await core.exchange_code_for_tokens('code', encode_state('doctor-001'))
        assert await core.credentials.get('doctor-001') is None

    async def test_invalid_code(self):
        fake = FakeGoogle()
        fake.reject('invalid_grant')
        core, _, _ = build_core(fake=fake)

        with pytest.raises(AuthRevokedError):
            await core.exchange_code_for_tokens('bad-code', encode_state('doctor-001'))

    async def test_token_endpoint_outage(self):
        fake = FakeGoogle()
        fake.token_status = 503
        core, _, _ = build_core(fake=fake)

        with pytest.raises(UpstreamUnavailableError):
            await core.exchange_code_for_tokens('code', encode_state('doctor-001'))


class TestEnsureFreshToken:

    async def test_fresh_token_returned_without_refresh(self):
        fake = FakeGoogle()
        core, _, _ = build_core(fake=fake, credentials=[make_credential()])

        credential = await core.oauth.ensure_fresh_token('doctor-001')

        assert credential.access_token == 'access-token-1'
        assert fake.token_requests == []

    async def test_expired_token_refreshed_and_persisted(self):
        fake = FakeGoogle()
        fake.grant(access_token='access-token-2', expires_in=3600)
        core, _, sink = build_core(fake=fake, credentials=[make_credential(expired=True)])

        credential = await core.oauth.ensure_fresh_token('doctor-001')

        assert credential.access_token == 'access-token-2'
        stored = await core.credentials.get('doctor-001')
        assert stored.access_token == 'access-token-2'
        assert stored.refresh_token == 'refresh-token-1'
        assert stored.expiry_date == NOW + timedelta(hours=1)
        assert fake.token_requests[0]['grant_type'] == 'refresh_token'
        assert sink.find('token_refreshed')

    async def test_rotated_refresh_token_kept(self):
        fake = FakeGoogle()
        fake.grant(access_token='access-token-2', refresh_token='refresh-token-2')
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)])

        await core.oauth.ensure_fresh_token('doctor-001')
        assert (await core.credentials.get('doctor-001')).refresh_token == 'refresh-token-2'

    async def test_concurrent_callers_refresh_once(self):
        fake = FakeGoogle()
        fake.grant(access_token='access-token-2')
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)])

        results = await asyncio.gather(*(core.oauth.ensure_fresh_token('doctor-001') for _ in range(5)))

        assert len(fake.token_requests) == 1
        assert {c.access_token for c in results} == {'access-token-2'}

    async def test_revoked_refresh_deactivates_credential(self):
        fake = FakeGoogle()
        fake.reject('invalid_grant')
        core, _, sink = build_core(fake=fake, credentials=[make_credential(expired=True)])

        with pytest.raises(AuthRevokedError):
            await core.oauth.ensure_fresh_token('doctor-001')

        stored = await core.credentials.get('doctor-001')
        assert stored.is_active is False
        assert sink.find('token_refresh_failed')

    async def test_transient_refresh_failure_keeps_credential_active(self):
        fake = FakeGoogle()
        fake.token_status = 500
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)])

        with pytest.raises(UpstreamUnavailableError):
            await core.oauth.ensure_fresh_token('doctor-001')
        assert (await core.credentials.get('doctor-001')).is_active is True

    async def test_no_credential(self):
        core, _, _ = build_core()
        with pytest.raises(NotFoundError):
            await core.oauth.ensure_fresh_token('doctor-001')

    async def test_explicit_refresh_ignores_expiry(self):
        fake = FakeGoogle()
        fake.grant(access_token='forced')
        core, _, _ = build_core(fake=fake, credentials=[make_credential()])

        credential = await core.refresh_access_token('doctor-001')

        assert credential.access_token == 'forced'
        assert len(fake.token_requests) == 1


class TestConnectionStatus:

    async def test_connected(self):
        core, _, _ = build_core(credentials=[make_credential(last_sync=NOW)])

        status = await core.get_calendar_connection_status('doctor-001')

        assert status.is_connected
        assert status.calendar_name == 'Primary Calendar'
        assert status.calendar_id == 'primary'
        assert status.last_sync == NOW
        assert 'access_token' not in status.model_dump()
        assert 'refresh_token' not in status.model_dump()

    async def test_no_credential_is_disconnected(self):
        core, _, _ = build_core()
        assert not (await core.get_calendar_connection_status('doctor-001')).is_connected

    async def test_disconnected_after_disconnect(self):
        core, _, sink = build_core(credentials=[make_credential()])

        await core.disconnect_calendar('doctor-001')

        status = await core.get_calendar_connection_status('doctor-001')
        assert status.is_connected is False
        stored = await core.credentials.get('doctor-001')
        assert stored is not None
        assert stored.access_token is None
        assert stored.refresh_token is None
        assert stored.is_active is False
        assert sink.find('calendar_disconnected')

    async def test_inactive_with_stale_tokens_is_disconnected(self):
        core, _, _ = build_core(credentials=[make_credential(is_active=False)])
        assert not (await core.get_calendar_connection_status('doctor-001')).is_connected

    async def test_failed_refresh_reported_not_raised(self):
        fake = FakeGoogle()
        fake.reject('invalid_grant')
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)])

        status = await core.get_calendar_connection_status('doctor-001')

        assert status.is_connected is False
        # Stays disconnected without another refresh attempt
        assert not (await core.get_calendar_connection_status('doctor-001')).is_connected
        assert len(fake.token_requests) == 1

    async def test_busy_refresh_lock_reported_not_raised(self):
        fake = FakeGoogle()
        fake.grant()
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)])
        redis_client = Mock()
        redis_client.set.return_value = None
        core.oauth.refresh_lock = RedisRefreshLock(redis_client, max_retries=0)

        status = await core.get_calendar_connection_status('doctor-001')

        assert status.is_connected is False
        assert fake.token_requests == []
        assert (await core.credentials.get('doctor-001')).is_active

    async def test_expired_token_refreshed_on_status(self):
        fake = FakeGoogle()
        fake.grant()
        clock = FixedClock()
        core, _, _ = build_core(fake=fake, credentials=[make_credential(expired=True)], clock=clock)

        assert (await core.get_calendar_connection_status('doctor-001')).is_connected

    async def test_disconnect_unknown_doctor(self):
        core, _, _ = build_core()
        with pytest.raises(NotFoundError):
            await core.disconnect_calendar('doctor-001')
