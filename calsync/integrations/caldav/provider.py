"""
CalDAV provider.

Implements the CalendarProvider protocol for WebDAV calendar collections.
CalDAV has no incremental listing; the collection tag (ctag) tells whether
anything changed, and a changed ctag triggers a refetch of the window.
"""

import logging
import re
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Sequence

from calsync.auth.credentials import CalDAVCredentials
from calsync.identity import extract_account_id, extract_calendar_id, extract_native_id, make_composite_id
from calsync.integrations.base import (
    Account,
    CalendarEvent,
    CalendarInfo,
    Changed,
    FetchResult,
    IncrementalResult,
    RecurrenceScope,
    Unchanged,
    validate_event,
    validate_updates,
)
from calsync.integrations.caldav.client import CalDAVClient, CalendarObject
from calsync.integrations.caldav.pool import CalDAVConnectionPool
from calsync.integrations.exceptions import ConflictError, NotFoundError, ValidationError
from calsync.integrations.ical import extract_uid, generate_event, parse_events

logger = logging.getLogger(__name__)

_HEX_COLOR_RE = re.compile(r"^#?([0-9A-Fa-f]{6})([0-9A-Fa-f]{2})?$")


@dataclass(frozen=True)
class CalDAVPreset:
    """Connection hints for a well-known CalDAV service."""

    name: str
    server_url: str
    help: str


CALDAV_PRESETS = {
    "icloud": CalDAVPreset(
        name="Apple iCloud",
        server_url="https://caldav.icloud.com",
        help="Use your Apple ID email and an app-specific password from appleid.apple.com",
    ),
    "fastmail": CalDAVPreset(
        name="Fastmail",
        server_url="https://caldav.fastmail.com",
        help="Use your Fastmail email and an app-specific password",
    ),
    "nextcloud": CalDAVPreset(
        name="Nextcloud",
        server_url="",
        help="Use https://your-server.com/remote.php/dav and your Nextcloud credentials",
    ),
    "radicale": CalDAVPreset(
        name="Radicale",
        server_url="",
        help="Use http://your-server:5232 and your Radicale credentials",
    ),
    "baikal": CalDAVPreset(
        name="Baïkal",
        server_url="",
        help="Use https://your-server.com/dav.php and your Baïkal credentials",
    ),
}


@dataclass
class ConnectionCheck:
    """Outcome of a CalDAV connection test."""

    success: bool
    calendar_count: int = 0
    message: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _ObjectRef:
    url: str
    etag: Optional[str]


def normalize_color(color: Optional[str]) -> Optional[str]:
    """
    Normalize a calendar color to ``#RRGGBB``.

    Apple servers report ``#RRGGBBAA``; the alpha channel is dropped.
    Values that are not hex colors are returned unchanged.
    """
    if not color:
        return None
    match = _HEX_COLOR_RE.match(color.strip())
    if match is None:
        return color
    return f"#{match.group(1).upper()}"


def _calendar_url(calendar_id: str) -> str:
    return calendar_id if calendar_id.endswith("/") else f"{calendar_id}/"


class CalDAVProvider:
    """
    CalendarProvider implementation for CalDAV servers.

    Calendar ids are collection URLs and native ids are iCalendar UIDs.
    Object URLs and ETags seen while listing are remembered per composite
    id so updates and deletes can skip re-listing the calendar; a stale
    entry falls back to looking the object up by UID.
    """

    provider_type = "caldav"

    def __init__(self, pool: CalDAVConnectionPool, cache_objects: bool = True):
        """
        Initialize the provider.

        Args:
            pool: Connection registry supplying one client per account
            cache_objects: Remember object URL/ETag per event id
        """
        self._pool = pool
        self._cache_objects = cache_objects
        self._objects: dict[str, _ObjectRef] = {}

    async def _client(self, account: Account) -> CalDAVClient:
        return await self._pool.get(account.id)

    def _remember(self, event_id: str, url: str, etag: Optional[str]) -> None:
        if self._cache_objects:
            self._objects[event_id] = _ObjectRef(url=url, etag=etag)

    def _forget(self, event_id: str) -> None:
        self._objects.pop(event_id, None)

    async def invalidate(self, account_id: str) -> None:
        """Close the account's connection and drop its cached object refs."""
        for event_id in [key for key in self._objects if extract_account_id(key) == account_id]:
            del self._objects[event_id]
        await self._pool.invalidate(account_id)

    async def list_calendars(self, account: Account) -> Sequence[CalendarInfo]:
        """
        List calendars that can hold events.

        Collections advertising components but not VEVENT (task lists,
        address books) are skipped. The first calendar is marked primary.
        """
        client = await self._client(account)
        calendars = [
            calendar
            for calendar in await client.list_calendars()
            if not calendar.components or "VEVENT" in calendar.components
        ]

        return [
            CalendarInfo(
                id=calendar.url,
                account_id=account.id,
                summary=calendar.display_name or f"Calendar {index + 1}",
                description=calendar.description,
                color=normalize_color(calendar.color),
                access_role="owner",
                primary=index == 0,
            )
            for index, calendar in enumerate(calendars)
        ]

    def _events_from_objects(
        self,
        objects: list[CalendarObject],
        account: Account,
        calendar_id: str,
    ) -> list[CalendarEvent]:
        events: dict[str, CalendarEvent] = {}
        for obj in objects:
            for event in parse_events(obj.data, account.id, calendar_id):
                existing = events.get(event.id)
                # Overrides share the master's UID; the master wins
                if existing is not None and event.recurring_event_id is not None:
                    continue
                events[event.id] = event
                self._remember(event.id, obj.url, obj.etag)
        return [event for event in events.values() if event.status != "cancelled"]

    async def _list_window(
        self,
        client: CalDAVClient,
        account: Account,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarEvent]:
        objects = await client.query_objects(_calendar_url(calendar_id), time_min, time_max)
        events = self._events_from_objects(objects, account, calendar_id)
        logger.debug(f"CalDAV: {len(events)} events in {calendar_id} for {account.id}")
        return events

    async def fetch_all(
        self,
        account: Account,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> FetchResult:
        """
        List every event in the window.

        The ctag is read before listing, so a change racing the listing
        shows up as a ctag mismatch on the next incremental call.
        """
        client = await self._client(account)
        ctag = await client.get_ctag(_calendar_url(calendar_id))
        events = await self._list_window(client, account, calendar_id, time_min, time_max)
        return FetchResult(events=events, continuation_token=ctag)

    async def fetch_incremental(
        self,
        account: Account,
        calendar_id: str,
        token: str,
        time_min: datetime,
        time_max: datetime,
    ) -> IncrementalResult:
        """
        Compare the stored ctag with the server's.

        Equal ctags mean nothing changed. Otherwise the window is refetched
        and returned as Changed with ``refetched`` set; this is never
        escalated as FullSyncRequired.
        """
        client = await self._client(account)
        current = await client.get_ctag(_calendar_url(calendar_id))

        if token and current and token == current:
            logger.debug(f"CalDAV: no changes for {calendar_id} (ctag match)")
            return Unchanged(next_token=current)

        logger.debug(f"CalDAV: ctag changed for {calendar_id} ({token!r} -> {current!r}), refetching")
        events = await self._list_window(client, account, calendar_id, time_min, time_max)
        return Changed(changed=events, deleted_ids=[], next_token=current, refetched=True)

    async def create_event(
        self,
        account: Account,
        calendar_id: str,
        event: CalendarEvent,
        add_conference: bool = False,
    ) -> CalendarEvent:
        """
        Create an event as a new ``<uid>.ics`` object.

        CalDAV has no conference-link side effect; ``add_conference`` is ignored.
        """
        validate_event(event)
        if add_conference:
            logger.debug("CalDAV cannot create conference links; ignoring request")

        client = await self._client(account)
        uid = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        created = replace(
            event,
            id=make_composite_id(account.id, uid, calendar_id),
            account_id=account.id,
            calendar_id=calendar_id,
            created_at=event.created_at or now,
            updated_at=now,
        )

        url = f"{_calendar_url(calendar_id)}{uid}.ics"
        etag = await client.put_object(url, generate_event(created, uid), create=True)
        self._remember(created.id, url, etag)

        logger.info(f"Created CalDAV event '{event.summary}' in {calendar_id}")
        return created

    async def _find_by_uid(
        self,
        client: CalDAVClient,
        calendar_id: str,
        uid: str,
    ) -> Optional[CalendarObject]:
        """Locate an object by listing the whole calendar and matching UIDs."""
        for obj in await client.query_objects(_calendar_url(calendar_id)):
            if extract_uid(obj.data) == uid:
                return obj
        return None

    @staticmethod
    def _merge(
        data: str,
        account: Account,
        calendar_id: str,
        event_id: str,
        updates: dict,
    ) -> CalendarEvent:
        """Apply updates on top of the master VEVENT stored on the server."""
        events = [event for event in parse_events(data, account.id, calendar_id) if event.id == event_id]
        if not events:
            raise NotFoundError(f"CalDAV object for {extract_native_id(event_id)} has no matching VEVENT")
        base = next((event for event in events if event.recurring_event_id is None), events[0])
        return replace(base, **updates)

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
        Apply a partial update by rewriting the object.

        The object stores the whole series, so every scope rewrites it;
        ``this-and-following`` has no CalDAV equivalent and behaves like
        ``this-instance``.

        Raises:
            NotFoundError: If no object carries the event's UID
            ConflictError: If the object changed between lookup and write
        """
        validate_updates(updates)
        calendar_id = extract_calendar_id(event_id) or (original.calendar_id if original else None)
        if not calendar_id:
            raise ValidationError(f"Cannot tell which calendar holds {event_id}")
        event_id = make_composite_id(account.id, extract_native_id(event_id), calendar_id)
        uid = extract_native_id(event_id)
        client = await self._client(account)
        now = datetime.now(timezone.utc)

        cached = self._objects.get(event_id)
        if cached is not None and original is not None:
            merged = replace(original, id=event_id, updated_at=now, **updates)
            try:
                etag = await client.put_object(cached.url, generate_event(merged, uid), etag=cached.etag)
                self._remember(event_id, cached.url, etag)
                logger.info(f"Updated CalDAV event {uid}: {list(updates.keys())}")
                return merged
            except (ConflictError, NotFoundError):
                logger.debug(f"Cached location for {uid} is stale, looking it up by UID")
                self._forget(event_id)

        existing = await self._find_by_uid(client, calendar_id, uid)
        if existing is None:
            raise NotFoundError(f"CalDAV event {uid} not found on server")

        merged = self._merge(existing.data, account, calendar_id, event_id, updates)
        merged = replace(merged, updated_at=now)
        etag = await client.put_object(existing.url, generate_event(merged, uid), etag=existing.etag)
        self._remember(event_id, existing.url, etag)

        logger.info(f"Updated CalDAV event {uid}: {list(updates.keys())}")
        return merged

    async def delete_event(
        self,
        account: Account,
        event_id: str,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        recurring_event_id: Optional[str] = None,
    ) -> None:
        """
        Delete the object holding the event.

        A missing object counts as already deleted.
        """
        calendar_id = extract_calendar_id(event_id)
        if not calendar_id:
            raise ValidationError(f"Cannot tell which calendar holds {event_id}")
        uid = extract_native_id(event_id)
        client = await self._client(account)

        cached = self._objects.pop(event_id, None)
        if cached is not None:
            try:
                await client.delete_object(cached.url, etag=cached.etag)
                logger.info(f"Deleted CalDAV event {uid}")
                return
            except (ConflictError, NotFoundError):
                logger.debug(f"Cached location for {uid} is stale, looking it up by UID")

        existing = await self._find_by_uid(client, calendar_id, uid)
        if existing is None:
            logger.warning(f"CalDAV event {uid} not found on server, may already be deleted")
            return

        try:
            await client.delete_object(existing.url, etag=existing.etag)
        except NotFoundError:
            logger.warning(f"CalDAV event {uid} disappeared before it could be deleted")
            return
        logger.info(f"Deleted CalDAV event {uid}")

    async def update_attendance(self, account: Account, event_id: str, response_status: str) -> CalendarEvent:
        """RSVP is not supported over CalDAV."""
        raise ValidationError("RSVP via CalDAV is not supported")

    async def test_connection(self, credentials: CalDAVCredentials) -> ConnectionCheck:
        """
        Check that the server accepts the credentials and exposes calendars.

        Never raises; failures are reported in the returned ConnectionCheck.
        """
        client = self._pool.connect(credentials)
        try:
            calendars = await client.list_calendars()
        except Exception as e:
            logger.error(f"CalDAV connection test failed for {credentials.server_url}: {e}")
            return ConnectionCheck(success=False, error=str(e) or type(e).__name__)
        finally:
            await client.close()

        return ConnectionCheck(
            success=True,
            calendar_count=len(calendars),
            message=f"{len(calendars)} calendar(s) found" if calendars else None,
        )
