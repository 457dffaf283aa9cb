"""
OAuth Manager for Calendar Integrations
Handles the Google Calendar authorization-code flow and the token lifecycle
"""

import asyncio
import base64
import binascii
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from practice_scheduling.config import CalendarSettings
from practice_scheduling.db.stores import CredentialStore, DoctorDirectory
from practice_scheduling.exceptions import (
    AuthError,
    AuthExpiredError,
    AuthRevokedError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from practice_scheduling.models.scheduling import (
    ConnectionStatus,
    ExternalCalendarCredential,
    OAuthExchangeResult,
    utcnow,
)
from practice_scheduling.services.audit_logger import AuditCategory, AuditLevel, AuditLogger
from practice_scheduling.services.external_timeouts import oauth_timeout
from practice_scheduling.services.locks import LocalRefreshLock, RefreshLock

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ID = "primary"
PRIMARY_CALENDAR_NAME = "Primary Calendar"


def encode_state(doctor_id: str) -> str:
    """Pack the doctor id into the opaque OAuth state parameter."""
    payload = json.dumps({"doctorId": doctor_id}).encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii")


def decode_state(state: str) -> str:
    """
    Recover the doctor id from an OAuth state parameter.

    Raises:
        ValidationError: If the state is not decodable or carries no doctorId
    """
    if not state:
        raise ValidationError("Missing OAuth state")
    try:
        padded = state + "=" * (-len(state) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as e:
        raise ValidationError(f"Invalid OAuth state: {e}")

    doctor_id = data.get("doctorId") if isinstance(data, dict) else None
    if not doctor_id or not isinstance(doctor_id, str):
        raise ValidationError("OAuth state does not contain a doctorId")
    return doctor_id


class CalendarOAuthManager:
    """
    Manages the OAuth flow and per-doctor token freshness for the remote calendar
    """

    def __init__(
        self,
        settings: CalendarSettings,
        credential_store: CredentialStore,
        directory: DoctorDirectory,
        refresh_lock: Optional[RefreshLock] = None,
        audit: Optional[AuditLogger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.credentials = credential_store
        self.directory = directory
        self.refresh_lock = refresh_lock or LocalRefreshLock()
        self.audit = audit or AuditLogger()
        self.http = http_client or httpx.AsyncClient(timeout=oauth_timeout(settings))
        self.clock = clock or utcnow

    def generate_auth_url(self, doctor_id: str) -> str:
        """
        Build the Google consent URL for a doctor

        Offline access with forced consent so a refresh token is issued even
        when the doctor re-authorizes.

        Returns:
            OAuth authorization URL
        """
        if not self.settings.GOOGLE_CALENDAR_CLIENT_ID:
            raise ValidationError("Google Calendar OAuth client is not configured")
        if not doctor_id:
            raise ValidationError("doctor_id is required")

        params = {
            'client_id': self.settings.GOOGLE_CALENDAR_CLIENT_ID,
            'redirect_uri': self.settings.GOOGLE_CALENDAR_REDIRECT_URI,
            'response_type': 'code',
            'scope': self.settings.scope_string,
            'state': encode_state(doctor_id),
            'access_type': 'offline',
            'prompt': 'consent',
            'include_granted_scopes': 'true',
        }

        logger.info(f"Generated Google Calendar auth URL for doctor {doctor_id}")
        return f"{self.settings.GOOGLE_AUTH_URI}?{urlencode(params)}"

    async def exchange_code(self, code: str, state: str) -> OAuthExchangeResult:
        """
        Handle the OAuth callback: exchange the code and store the credential

        Args:
            code: Authorization code from Google
            state: State parameter produced by generate_auth_url

        Returns:
            Doctor id and the stored credential
        """
        if not code:
            raise ValidationError("Missing authorization code")
        doctor_id = decode_state(state)

        doctor = await self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise NotFoundError("Doctor", doctor_id)

        tokens = await self._token_request({
            'code': code,
            'client_id': self.settings.GOOGLE_CALENDAR_CLIENT_ID,
            'client_secret': self.settings.GOOGLE_CALENDAR_CLIENT_SECRET,
            'redirect_uri': self.settings.GOOGLE_CALENDAR_REDIRECT_URI,
            'grant_type': 'authorization_code',
        }, doctor_id)

        if not tokens.get('access_token') or not tokens.get('refresh_token'):
            raise AuthRevokedError(
                "Token response did not include both access and refresh tokens",
                doctor_id=doctor_id,
            )

        now = self.clock()
        existing = await self.credentials.get(doctor_id)
        credential = ExternalCalendarCredential(
            doctor_id=doctor_id,
            access_token=tokens['access_token'],
            refresh_token=tokens['refresh_token'],
            expiry_date=self._expiry_from(tokens, now),
            scope=tokens.get('scope') or self.settings.scope_string,
            token_type=tokens.get('token_type', 'Bearer'),
            calendar_id=PRIMARY_CALENDAR_ID,
            calendar_name=PRIMARY_CALENDAR_NAME,
            is_active=True,
            last_sync=now,
            next_sync=now + timedelta(minutes=self.settings.SYNC_INTERVAL_MINUTES),
            created_at=existing.created_at if existing else now,
        )
        credential = await self.credentials.save(credential)

        await self.audit.log_event(
            AuditCategory.AUTHENTICATION,
            "calendar_connected",
            doctor_id=doctor_id,
            resource_type="calendar_credential",
            details={'calendar_id': credential.calendar_id, 'scope': credential.scope},
        )
        logger.info(f"Successfully connected Google Calendar for doctor {doctor_id}")

        return OAuthExchangeResult(doctor_id=doctor_id, credential=credential)

    async def ensure_fresh_token(self, doctor_id: str) -> ExternalCalendarCredential:
        """
        Return an active credential whose access token is not expired

        Refreshes are single-flighted per doctor: after acquiring the lock the
        credential is re-read and the refresh is skipped when another caller
        already did it.

        Raises:
            NotFoundError: If the doctor has no active credential
            AuthRevokedError: If the refresh token was rejected (credential is deactivated)
            UpstreamUnavailableError: If the token endpoint cannot be reached
        """
        credential = await self.credentials.get_active(doctor_id)
        if credential is None:
            raise NotFoundError("Calendar credential", doctor_id)
        if not credential.is_expired(self.clock()):
            return credential

        async with self.refresh_lock.acquire(doctor_id):
            credential = await self.credentials.get_active(doctor_id)
            if credential is None:
                raise AuthRevokedError("Calendar credential was disconnected", doctor_id=doctor_id)
            if not credential.is_expired(self.clock()):
                logger.debug(f"Token for doctor {doctor_id} already refreshed by another caller")
                return credential
            return await self._refresh(credential)

    async def refresh_access_token(self, doctor_id: str) -> ExternalCalendarCredential:
        """Force a refresh-token exchange regardless of the current expiry."""
        async with self.refresh_lock.acquire(doctor_id):
            credential = await self.credentials.get_active(doctor_id)
            if credential is None:
                raise NotFoundError("Calendar credential", doctor_id)
            return await self._refresh(credential)

    async def disconnect(self, doctor_id: str) -> None:
        """Clear tokens and deactivate the credential; the record is kept for history."""
        credential = await self.credentials.get(doctor_id)
        if credential is None:
            raise NotFoundError("Calendar credential", doctor_id)

        credential.access_token = None
        credential.refresh_token = None
        credential.expiry_date = None
        credential.is_active = False
        await self.credentials.save(credential)

        await self.audit.log_event(
            AuditCategory.AUTHENTICATION,
            "calendar_disconnected",
            doctor_id=doctor_id,
            resource_type="calendar_credential",
        )
        logger.info(f"Calendar disconnected for doctor {doctor_id}")

    async def get_connection_status(self, doctor_id: str) -> ConnectionStatus:
        """
        Report whether the doctor's calendar is usable

        Never raises: lookup and refresh failures are reported as disconnected.
        """
        try:
            credential = await self.credentials.get(doctor_id)
        except Exception as e:
            logger.error(f"Failed to load calendar credential for doctor {doctor_id}: {e}", exc_info=True)
            return ConnectionStatus(is_connected=False)

        if credential is None or not credential.is_active:
            return ConnectionStatus(is_connected=False)
        if not credential.refresh_token or not credential.access_token:
            return ConnectionStatus(is_connected=False)

        if credential.is_expired(self.clock()):
            try:
                credential = await self.ensure_fresh_token(doctor_id)
            except (AuthError, NotFoundError, UpstreamUnavailableError) as e:
                logger.warning(f"Calendar for doctor {doctor_id} reported disconnected: {e}")
                return ConnectionStatus(is_connected=False)
            except Exception as e:
                logger.error(f"Token refresh failed for doctor {doctor_id}: {e}", exc_info=True)
                return ConnectionStatus(is_connected=False)

        return ConnectionStatus(
            is_connected=True,
            calendar_name=credential.calendar_name,
            calendar_id=credential.calendar_id,
            last_sync=credential.last_sync,
            next_sync=credential.next_sync,
        )

    async def _refresh(self, credential: ExternalCalendarCredential) -> ExternalCalendarCredential:
        doctor_id = credential.doctor_id
        if not credential.refresh_token:
            await self._deactivate(credential, "no refresh token stored")
            raise AuthRevokedError("No refresh token available; reconnect the calendar", doctor_id=doctor_id)

        try:
            tokens = await self._token_request({
                'refresh_token': credential.refresh_token,
                'client_id': self.settings.GOOGLE_CALENDAR_CLIENT_ID,
                'client_secret': self.settings.GOOGLE_CALENDAR_CLIENT_SECRET,
                'grant_type': 'refresh_token',
            }, doctor_id)
        except AuthError as e:
            await self._deactivate(credential, e.message)
            raise AuthRevokedError(f"Token refresh rejected: {e.message}", doctor_id=doctor_id) from e

        if not tokens.get('access_token'):
            await self._deactivate(credential, "refresh response without access token")
            raise AuthRevokedError("Token refresh returned no access token", doctor_id=doctor_id)

        now = self.clock()
        credential.access_token = tokens['access_token']
        credential.expiry_date = self._expiry_from(tokens, now)
        if tokens.get('refresh_token'):
            # Google may rotate the refresh token
            credential.refresh_token = tokens['refresh_token']
        credential = await self.credentials.save(credential)

        await self.audit.log_event(
            AuditCategory.AUTHENTICATION,
            "token_refreshed",
            doctor_id=doctor_id,
            resource_type="calendar_credential",
            details={'expiry_date': credential.expiry_date.isoformat()},
        )
        logger.info(f"Refreshed calendar access token for doctor {doctor_id}")
        return credential

    async def _deactivate(self, credential: ExternalCalendarCredential, reason: str) -> None:
        credential.is_active = False
        await self.credentials.save(credential)
        await self.audit.log_event(
            AuditCategory.AUTHENTICATION,
            "token_refresh_failed",
            outcome="failure",
            level=AuditLevel.WARNING,
            doctor_id=credential.doctor_id,
            resource_type="calendar_credential",
            details={'reason': reason},
        )
        logger.warning(f"Calendar credential for doctor {credential.doctor_id} deactivated: {reason}")

    def _expiry_from(self, tokens: Dict[str, Any], now: datetime) -> datetime:
        expires_in = tokens.get('expires_in') or self.settings.DEFAULT_TOKEN_LIFETIME_SECONDS
        return now + timedelta(seconds=int(expires_in))

    async def _token_request(self, data: Dict[str, str], doctor_id: str) -> Dict[str, Any]:
        """POST to the token endpoint, mapping failures onto the error taxonomy."""
        try:
            response = await asyncio.wait_for(
                self.http.post(self.settings.GOOGLE_TOKEN_URI, data=data),
                timeout=self.settings.REMOTE_CALL_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            raise UpstreamUnavailableError("Token endpoint timed out", doctor_id=doctor_id)
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Token endpoint unreachable: {e}", doctor_id=doctor_id)

        if response.status_code == 429 or response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Token endpoint returned {response.status_code}",
                doctor_id=doctor_id,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            error = body.get('error') if isinstance(body, dict) else None
            if error == 'invalid_grant':
                raise AuthRevokedError("Grant is invalid, expired or revoked", doctor_id=doctor_id)
            raise AuthExpiredError(
                f"Token request failed with {response.status_code}: {error or 'unknown error'}",
                doctor_id=doctor_id,
            )

        if not isinstance(body, dict):
            raise AuthExpiredError("Malformed token response", doctor_id=doctor_id)
        return body

    async def aclose(self) -> None:
        await self.http.aclose()
