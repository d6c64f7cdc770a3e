"""
Google Calendar API client wrapper with retry and error handling.

Provides a clean interface over the Google Calendar API v3.
"""

import logging
import uuid
from typing import Optional

import httplib2
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build, Resource
from googleapiclient.errors import HttpError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
)

from calsync.integrations.exceptions import (
    AuthError,
    CalendarSyncError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    TokenInvalidatedError,
    TransientNetworkError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_RESULTS = 250
DEFAULT_TIMEOUT = 30.0

# Transport failures surfaced by httplib2 and the socket layer beneath it
NETWORK_ERRORS = (httplib2.HttpLib2Error, OSError)


def _is_retryable_error(exception: Exception) -> bool:
    """Check if an exception should trigger a retry."""
    if isinstance(exception, CalendarSyncError):
        return exception.retryable
    if isinstance(exception, HttpError):
        return exception.resp.status in (429, 500, 502, 503, 504)
    return isinstance(exception, NETWORK_ERRORS)


def _handle_http_error(error: HttpError) -> None:
    """Convert HttpError to the appropriate CalendarSyncError."""
    status = error.resp.status
    message = str(error)

    if status == 401:
        raise AuthError(
            "Authentication failed - credentials may be invalid or expired",
            original_error=error,
        )
    elif status == 403:
        if "quota" in message.lower() or "rate limit" in message.lower():
            raise RateLimitError(
                "API quota exceeded",
                original_error=error,
            )
        raise AuthError(
            "Access denied - check calendar sharing permissions",
            original_error=error,
        )
    elif status == 400:
        raise ValidationError(
            f"Request rejected by Google Calendar: {message}",
            original_error=error,
        )
    elif status == 404:
        raise NotFoundError(
            "Event or calendar not found",
            original_error=error,
        )
    elif status == 409:
        raise ConflictError(
            "Event was modified by another process",
            original_error=error,
        )
    elif status == 410:
        raise TokenInvalidatedError(
            "Sync token is no longer valid",
            original_error=error,
        )
    elif status == 429:
        raise RateLimitError(
            "Rate limit exceeded - too many requests",
            original_error=error,
        )
    elif status >= 500:
        raise TransientNetworkError(
            f"Google Calendar API unavailable ({status})",
            original_error=error,
        )
    else:
        raise CalendarSyncError(
            f"Google Calendar API error ({status}): {message}",
            original_error=error,
        )


def _conference_request() -> dict:
    """Body fragment asking Google to attach a Meet link."""
    return {
        "createRequest": {
            "requestId": str(uuid.uuid4()),
            "conferenceSolutionKey": {"type": "hangoutsMeet"},
        }
    }


_retry_policy = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable_error),
    reraise=True,
)


class GoogleCalendarClient:
    """
    Wrapper around Google Calendar API v3.

    Provides:
    - Automatic retry with exponential backoff
    - Consistent error handling
    - Pagination handling for list operations
    - Sync-token based incremental listing
    """

    def __init__(self, credentials: Credentials, timeout: float = DEFAULT_TIMEOUT):
        """
        Initialize the client.

        Args:
            credentials: Google OAuth2 credentials
            timeout: Socket timeout in seconds for every API request
        """
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
        self._service: Resource = build(
            "calendar",
            "v3",
            http=http,
            cache_discovery=False,
        )

    @classmethod
    def from_bearer_token(
        cls, token: str, timeout: float = DEFAULT_TIMEOUT
    ) -> "GoogleCalendarClient":
        """Create a client from a bare access token."""
        return cls(Credentials(token=token), timeout=timeout)

    @property
    def service(self) -> Resource:
        """Get the underlying Google API service."""
        return self._service

    @_retry_policy
    def _execute(self, request) -> dict:
        try:
            return request.execute()
        except HttpError as e:
            _handle_http_error(e)
        except NETWORK_ERRORS as e:
            raise TransientNetworkError(
                f"Network error talking to Google Calendar: {e}",
                original_error=e,
            )

    def list_calendars(self) -> list[dict]:
        """
        List every calendar in the user's calendar list.

        Returns:
            Calendar list entries
        """
        calendars = []
        page_token = None

        while True:
            response = self._execute(
                self._service.calendarList().list(pageToken=page_token)
            )
            calendars.extend(response.get("items", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Listed {len(calendars)} calendars")
        return calendars

    def list_events(
        self,
        calendar_id: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        single_events: bool = True,
        max_results: int = MAX_RESULTS,
        page_token: Optional[str] = None,
        sync_token: Optional[str] = None,
    ) -> dict:
        """
        List one page of events from a calendar.

        Args:
            calendar_id: Calendar to query
            time_min: Lower bound (RFC 3339); not allowed with sync_token
            time_max: Upper bound (RFC 3339); not allowed with sync_token
            single_events: If True, expand recurring events
            max_results: Maximum events per page
            page_token: Token for pagination
            sync_token: Token from a previous listing for incremental sync

        Returns:
            API response with items, nextPageToken and (on the last page) nextSyncToken

        Raises:
            TokenInvalidatedError: If the sync token has expired (410)
        """
        params = {
            "calendarId": calendar_id,
            "maxResults": max_results,
            "pageToken": page_token,
            "singleEvents": single_events,
        }
        # Google rejects time bounds and ordering alongside a sync token
        if sync_token:
            params["syncToken"] = sync_token
        else:
            params.update(
                timeMin=time_min,
                timeMax=time_max,
                orderBy="startTime" if single_events else None,
            )

        return self._execute(self._service.events().list(**params))

    def list_all_events(
        self,
        calendar_id: str,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        single_events: bool = True,
        sync_token: Optional[str] = None,
    ) -> tuple[list[dict], Optional[str]]:
        """
        List all events with automatic pagination.

        Args:
            calendar_id: Calendar to query
            time_min: Lower bound (RFC 3339)
            time_max: Upper bound (RFC 3339)
            single_events: If True, expand recurring events
            sync_token: Incremental sync token (replaces the time bounds)

        Returns:
            (events, next_sync_token); the sync token comes from the final page
        """
        all_events = []
        page_token = None
        next_sync_token = None

        while True:
            response = self.list_events(
                calendar_id=calendar_id,
                time_min=time_min,
                time_max=time_max,
                single_events=single_events,
                page_token=page_token,
                sync_token=sync_token,
            )

            all_events.extend(response.get("items", []))

            page_token = response.get("nextPageToken")
            if not page_token:
                next_sync_token = response.get("nextSyncToken")
                break

        logger.debug(f"Listed {len(all_events)} events from {calendar_id}")
        return all_events, next_sync_token

    def get_event(self, calendar_id: str, event_id: str) -> dict:
        """
        Get a single event by ID.

        Args:
            calendar_id: Calendar containing the event
            event_id: Event ID

        Returns:
            Event data
        """
        return self._execute(
            self._service.events().get(
                calendarId=calendar_id,
                eventId=event_id,
            )
        )

    def insert_event(self, calendar_id: str, body: dict, add_conference: bool = False) -> dict:
        """
        Create a new event.

        Args:
            calendar_id: Calendar to create event in
            body: Event data in Google Calendar format
            add_conference: Ask Google to attach a video conference link

        Returns:
            Created event with ID
        """
        if add_conference:
            body = {**body, "conferenceData": _conference_request()}

        result = self._execute(
            self._service.events().insert(
                calendarId=calendar_id,
                body=body,
                conferenceDataVersion=1 if add_conference else None,
            )
        )
        logger.info(f"Created event {result.get('id')} in {calendar_id}")
        return result

    def patch_event(
        self,
        calendar_id: str,
        event_id: str,
        body: dict,
        add_conference: bool = False,
    ) -> dict:
        """
        Patch an existing event (partial update).

        Args:
            calendar_id: Calendar containing the event
            event_id: Event to update
            body: Fields to update
            add_conference: Ask Google to attach a video conference link

        Returns:
            Updated event
        """
        if add_conference:
            body = {**body, "conferenceData": _conference_request()}

        result = self._execute(
            self._service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=body,
                conferenceDataVersion=1 if add_conference else None,
            )
        )
        logger.info(f"Patched event {event_id} in {calendar_id}")
        return result

    def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        send_notifications: bool = False,
    ) -> None:
        """
        Delete an event.

        Args:
            calendar_id: Calendar containing the event
            event_id: Event to delete
            send_notifications: Notify attendees of the cancellation
        """
        try:
            self._execute(
                self._service.events().delete(
                    calendarId=calendar_id,
                    eventId=event_id,
                    sendUpdates="all" if send_notifications else "none",
                )
            )
            logger.info(f"Deleted event {event_id} from {calendar_id}")
        except NotFoundError:
            # Already deleted - consider success
            logger.warning(f"Event {event_id} already deleted")

    def freebusy_query(
        self,
        calendar_ids: list[str],
        time_min: str,
        time_max: str,
    ) -> dict:
        """
        Query free/busy information.

        Args:
            calendar_ids: Calendars (or attendee emails) to query
            time_min: Lower bound (RFC 3339)
            time_max: Upper bound (RFC 3339)

        Returns:
            Free/busy data for each calendar
        """
        body = {
            "timeMin": time_min,
            "timeMax": time_max,
            "items": [{"id": cal_id} for cal_id in calendar_ids],
        }
        return self._execute(self._service.freebusy().query(body=body))
