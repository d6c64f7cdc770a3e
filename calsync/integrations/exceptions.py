"""
Custom exceptions for calendar provider operations.

Provides structured error handling with retryable flags, shared by the
Google Calendar and CalDAV backends.
"""


class CalendarSyncError(Exception):
    """Base exception for calendar provider operations."""

    retryable: bool = False

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class AuthError(CalendarSyncError):
    """
    Authentication or authorization failure.

    Causes:
    - No stored credential for the account
    - Access token could not be refreshed
    - Server rejected the credential (401/403)

    Fatal for the account's pass, never for other accounts.
    """

    retryable = False


class TransientNetworkError(CalendarSyncError):
    """
    Timeout, connection failure or 5xx response.

    Retryable; when retries are exhausted the calendar is skipped for
    this pass and retried on the next one.
    """

    retryable = True


class RateLimitError(TransientNetworkError):
    """
    Rate limit or quota hit (429, or 403 with a quota reason).

    Retryable after exponential backoff.
    """

    retryable = True


class ConflictError(CalendarSyncError):
    """
    Optimistic concurrency failure.

    Causes:
    - Stale ETag on a CalDAV PUT/DELETE (412)
    - Event modified concurrently on the REST API (409)
    """

    retryable = False


class NotFoundError(CalendarSyncError):
    """
    Event or calendar not found.

    Delete paths treat this as already deleted.
    """

    retryable = False


class ValidationError(CalendarSyncError):
    """
    Invalid caller-supplied event data.

    Causes:
    - Missing start or end
    - End before start
    - Operation unsupported by the backend
    """

    retryable = False


class TokenInvalidatedError(CalendarSyncError):
    """
    Incremental continuation token rejected by the server (410 Gone).

    Never surfaced to callers; providers convert it into a
    full-sync-required result.
    """

    retryable = False
