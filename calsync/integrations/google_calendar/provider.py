"""
Google Calendar provider.

Implements the CalendarProvider protocol on top of the synchronous
Google API client. Client calls run in a thread pool so the provider
stays awaitable.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Literal, Optional, Sequence

from calsync.auth.credentials import CredentialProvider
from calsync.identity import extract_calendar_id, extract_native_id, make_composite_id
from calsync.integrations.base import (
    Account,
    BusyPeriod,
    CalendarEvent,
    CalendarInfo,
    Changed,
    FetchResult,
    FullSyncRequired,
    IncrementalResult,
    RecurrenceScope,
    Unchanged,
    validate_event,
    validate_updates,
)
from calsync.integrations.exceptions import TokenInvalidatedError, ValidationError
from calsync.integrations.google_calendar.adapter import GoogleCalendarAdapter
from calsync.integrations.google_calendar.client import GoogleCalendarClient

logger = logging.getLogger(__name__)

DEFAULT_CALENDAR_ID = "primary"


def _format_rfc3339(dt: datetime) -> str:
    """Format datetime to RFC 3339 for Google API."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


class GoogleCalendarProvider:
    """
    CalendarProvider implementation using Google Calendar API v3.

    Bearer tokens come from the credential provider on every call; an API
    client is cached per account and rebuilt when the token changes.
    """

    provider_type = "google"

    def __init__(
        self,
        credentials: CredentialProvider,
        executor: Optional[ThreadPoolExecutor] = None,
        client_factory: Callable[[str], GoogleCalendarClient] = GoogleCalendarClient.from_bearer_token,
    ):
        """
        Initialize the provider.

        Args:
            credentials: Source of bearer tokens
            executor: Thread pool for running sync API calls (creates default if None)
            client_factory: Builds an API client from an access token
        """
        self._credentials = credentials
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._client_factory = client_factory
        self._clients: dict[str, tuple[str, GoogleCalendarClient]] = {}
        self._adapter = GoogleCalendarAdapter()

    async def _client(self, account: Account) -> GoogleCalendarClient:
        """Get or create the API client for an account."""
        token = await self._credentials.get_bearer_token(account.id)
        cached = self._clients.get(account.id)
        if cached is not None and cached[0] == token:
            return cached[1]
        client = self._client_factory(token)
        self._clients[account.id] = (token, client)
        return client

    async def _run_in_executor(self, func, *args, **kwargs):
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            partial(func, *args, **kwargs),
        )

    async def invalidate(self, account_id: str) -> None:
        """Drop the cached client for an account."""
        self._clients.pop(account_id, None)

    async def list_calendars(self, account: Account) -> Sequence[CalendarInfo]:
        client = await self._client(account)
        entries = await self._run_in_executor(client.list_calendars)
        return [self._adapter.to_calendar_info(entry, account.id) for entry in entries]

    async def fetch_all(
        self,
        account: Account,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> FetchResult:
        """
        List every event in the window, recurring events expanded.

        Returns:
            Non-cancelled events and the sync token from the final page
        """
        client = await self._client(account)
        google_events, sync_token = await self._run_in_executor(
            client.list_all_events,
            calendar_id=calendar_id,
            time_min=_format_rfc3339(time_min),
            time_max=_format_rfc3339(time_max),
            single_events=True,
        )

        events = [
            self._adapter.from_google_event(event, account.id, calendar_id)
            for event in google_events
            if event.get("status") != "cancelled"
        ]

        logger.debug(
            f"Retrieved {len(events)} events from {calendar_id} "
            f"between {time_min} and {time_max}"
        )
        return FetchResult(events=events, continuation_token=sync_token)

    async def fetch_incremental(
        self,
        account: Account,
        calendar_id: str,
        token: str,
        time_min: datetime,
        time_max: datetime,
    ) -> IncrementalResult:
        """
        List changes since a sync token.

        Cancelled items become deleted ids. A 410 from Google is returned
        as FullSyncRequired.
        """
        client = await self._client(account)
        try:
            google_events, next_token = await self._run_in_executor(
                client.list_all_events,
                calendar_id=calendar_id,
                single_events=True,
                sync_token=token,
            )
        except TokenInvalidatedError:
            logger.warning(f"Sync token for {calendar_id} ({account.id}) expired")
            return FullSyncRequired(reason="sync token expired (410)")

        changed = []
        deleted_ids = []
        for google_event in google_events:
            if google_event.get("status") == "cancelled":
                deleted_ids.append(
                    make_composite_id(account.id, google_event.get("id", ""), calendar_id)
                )
            else:
                changed.append(
                    self._adapter.from_google_event(google_event, account.id, calendar_id)
                )

        if not changed and not deleted_ids:
            return Unchanged(next_token=next_token or token)

        logger.debug(
            f"{calendar_id}: {len(changed)} changed, {len(deleted_ids)} deleted since last sync"
        )
        return Changed(changed=changed, deleted_ids=deleted_ids, next_token=next_token or token)

    async def create_event(
        self,
        account: Account,
        calendar_id: str,
        event: CalendarEvent,
        add_conference: bool = False,
    ) -> CalendarEvent:
        validate_event(event)
        client = await self._client(account)
        google_event = await self._run_in_executor(
            client.insert_event,
            calendar_id=calendar_id,
            body=self._adapter.to_google_event(event),
            add_conference=add_conference,
        )

        created = self._adapter.from_google_event(google_event, account.id, calendar_id)
        logger.info(f"Created event '{event.summary}' in {calendar_id}")
        return created

    async def update_event(
        self,
        account: Account,
        event_id: str,
        updates: dict,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        original: Optional[CalendarEvent] = None,
        add_conference: bool = False,
    ) -> CalendarEvent:
        """
        Patch an event.

        ``all`` scope patches the recurrence master named by
        ``original.recurring_event_id``; the other scopes patch the
        addressed instance.
        """
        validate_updates(updates)
        calendar_id = self._calendar_for(event_id, original)
        target_id = extract_native_id(event_id)
        if scope == RecurrenceScope.ALL_IN_SERIES and original and original.recurring_event_id:
            target_id = original.recurring_event_id

        # An existing Meet link is kept; only request one when missing
        if original is not None and original.conference_link:
            add_conference = False

        client = await self._client(account)
        google_event = await self._run_in_executor(
            client.patch_event,
            calendar_id=calendar_id,
            event_id=target_id,
            body=self._adapter.to_update_body(updates),
            add_conference=add_conference,
        )

        updated = self._adapter.from_google_event(google_event, account.id, calendar_id)
        logger.info(f"Updated event {target_id}: {list(updates.keys())}")
        return updated

    async def delete_event(
        self,
        account: Account,
        event_id: str,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        recurring_event_id: Optional[str] = None,
    ) -> None:
        calendar_id = extract_calendar_id(event_id) or DEFAULT_CALENDAR_ID
        target_id = extract_native_id(event_id)
        if scope == RecurrenceScope.ALL_IN_SERIES and recurring_event_id:
            target_id = extract_native_id(recurring_event_id)

        client = await self._client(account)
        await self._run_in_executor(
            client.delete_event,
            calendar_id=calendar_id,
            event_id=target_id,
        )

    async def update_attendance(
        self,
        account: Account,
        event_id: str,
        response_status: Literal["accepted", "declined", "tentative"],
    ) -> CalendarEvent:
        """
        RSVP to an event by updating the self attendee's response.

        Raises:
            ValidationError: If the event has no attendees
        """
        calendar_id = extract_calendar_id(event_id) or DEFAULT_CALENDAR_ID
        native_id = extract_native_id(event_id)
        client = await self._client(account)

        google_event = await self._run_in_executor(
            client.get_event, calendar_id=calendar_id, event_id=native_id
        )
        attendees = google_event.get("attendees")
        if not attendees:
            raise ValidationError("Event has no attendees")

        updated_attendees = [
            {**attendee, "responseStatus": response_status} if attendee.get("self") else attendee
            for attendee in attendees
        ]
        patched = await self._run_in_executor(
            client.patch_event,
            calendar_id=calendar_id,
            event_id=native_id,
            body={"attendees": updated_attendees},
        )
        logger.info(f"RSVP {response_status} for {native_id}")
        return self._adapter.from_google_event(patched, account.id, calendar_id)

    async def query_free_busy(
        self,
        account: Account,
        emails: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> dict[str, list[BusyPeriod]]:
        """
        Query busy periods for people (or calendars) visible to the account.

        Returns:
            Dict mapping each email to its busy periods; per-email errors yield []
        """
        if not emails:
            return {}

        client = await self._client(account)
        response = await self._run_in_executor(
            client.freebusy_query,
            calendar_ids=emails,
            time_min=_format_rfc3339(time_min),
            time_max=_format_rfc3339(time_max),
        )
        return self._adapter.parse_freebusy_response(response, emails)

    @staticmethod
    def _calendar_for(event_id: str, original: Optional[CalendarEvent]) -> str:
        calendar_id = extract_calendar_id(event_id)
        if calendar_id:
            return calendar_id
        if original is not None and original.calendar_id:
            return original.calendar_id
        return DEFAULT_CALENDAR_ID

    async def close(self):
        """Clean up resources."""
        self._clients.clear()
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
        return False
