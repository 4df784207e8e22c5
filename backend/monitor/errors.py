"""
errors.py — Monitor Exception Hierarchy
========================================

Service operations raise these; the HTTP layer maps them to status codes.
"""


class MonitorError(Exception):
    """Base class for all monitor errors."""

    code = "monitor-error"

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(MonitorError):
    """A required argument is missing or malformed."""

    code = "invalid-argument"


class NotAuthenticatedError(MonitorError):
    """No user is signed in, or the caller acts for another user."""

    code = "unauthenticated"


class OwnershipError(MonitorError):
    """The device is claimed by someone else or not owned by the caller."""

    code = "permission-denied"


class DeviceNotFoundError(MonitorError):
    code = "device-not-found"


class AlertNotFoundError(MonitorError):
    code = "alert-not-found"


class AuthError(MonitorError):
    """Account operation failed; `message` is safe to show to the user."""

    code = "auth-error"
