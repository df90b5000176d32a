"""Exception hierarchy shared by the sync engine, services and HTTP layer."""

from typing import Optional


class CalSyncError(Exception):
    """Base exception for calendar sync errors."""


class AuthError(CalSyncError):
    """No usable access token: missing connection, missing credentials or refresh failure."""


class RemoteApiError(CalSyncError):
    """Non-success response from the calendar provider."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(RemoteApiError):
    """Provider asked us to back off (429) or failed transiently (5xx)."""


class CursorInvalidatedError(RemoteApiError):
    """The stored sync token was rejected and must be discarded (HTTP 410)."""

    def __init__(self, message: str = "Sync token is no longer valid", status_code: int = 410):
        super().__init__(message, status_code)


class ValidationError(CalSyncError):
    """Malformed or incomplete inbound request, e.g. a push notification without ids."""


class ConnectionNotFoundError(CalSyncError):
    """No connection matches a notification or an action request."""


class RecurrenceError(ValueError):
    """A recurrence rule could not be parsed or uses an unsupported frequency."""


class ManualSyncThrottled(CalSyncError):
    """A manual sync was requested again before the cooldown elapsed."""

    def __init__(self, retry_after_minutes: int):
        super().__init__(f"Please wait {retry_after_minutes} minute(s) before syncing again")
        self.retry_after_minutes = retry_after_minutes
