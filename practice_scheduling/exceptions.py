"""
Custom exceptions for the scheduling core.
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for scheduling and calendar errors."""

    def __init__(self, message: str, doctor_id: Optional[str] = None):
        self.message = message
        self.doctor_id = doctor_id
        super().__init__(message)


class NotFoundError(SchedulingError):
    """Raised when a doctor, appointment or credential does not exist."""

    def __init__(self, resource: str, resource_id: str, message: str = None):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message or f"{resource} {resource_id} not found")


class ConflictError(SchedulingError):
    """Raised when a slot is unavailable or a state transition is not allowed."""


class ValidationError(SchedulingError):
    """Raised when a request carries an invalid duration, type, time or state."""


class UpstreamUnavailableError(SchedulingError):
    """Raised when the remote calendar cannot be reached or times out."""

    def __init__(self, message: str, doctor_id: Optional[str] = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, doctor_id=doctor_id)


class AuthError(SchedulingError):
    """Base class for credential problems that require the doctor to reconnect."""


class AuthExpiredError(AuthError):
    """Raised when the access token is rejected and cannot be refreshed right now."""


class AuthRevokedError(AuthError):
    """Raised when the refresh token is no longer valid (consent revoked)."""
