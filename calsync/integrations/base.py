"""
Calendar provider protocol and base types.

Defines the normalized event shape shared by every backend and the
interface each provider (Google Calendar, CalDAV) implements.
"""

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Literal, Optional, Protocol, Sequence, Union

from calsync.identity import extract_native_id
from calsync.integrations.exceptions import ValidationError

EventStatus = Literal["confirmed", "tentative", "cancelled"]
ResponseStatus = Literal["needsAction", "declined", "tentative", "accepted"]
ProviderType = Literal["google", "caldav"]

EVENT_STATUSES = ("confirmed", "tentative", "cancelled")


class RecurrenceScope(str, Enum):
    """Which occurrences of a recurring event a mutation applies to."""

    THIS_INSTANCE = "this"
    THIS_AND_FOLLOWING = "following"
    ALL_IN_SERIES = "all"


@dataclass(frozen=True)
class EventTime:
    """
    Start or end of an event.

    All-day events carry a civil ``date``. Timed events carry an aware
    ``date_time`` and the IANA ``time_zone`` it should be rendered in.
    A timed value without zone information is floating (naive ``date_time``,
    ``time_zone`` None).
    """

    date: Optional[date] = None
    date_time: Optional[datetime] = None
    time_zone: Optional[str] = None

    @classmethod
    def all_day(cls, value) -> "EventTime":
        return cls(date=value)

    @classmethod
    def at(cls, value: datetime, time_zone: Optional[str] = None) -> "EventTime":
        if time_zone is None and value.tzinfo is not None and value.tzname() == "UTC":
            time_zone = "UTC"
        return cls(date_time=value, time_zone=time_zone)

    @property
    def is_all_day(self) -> bool:
        return self.date is not None and self.date_time is None

    @property
    def is_utc(self) -> bool:
        return self.date_time is not None and self.time_zone in ("UTC", "Etc/UTC", "Z")

    def as_utc(self) -> datetime:
        """Instant in UTC; all-day and floating values are read as UTC."""
        if self.date_time is not None:
            if self.date_time.tzinfo is None:
                return self.date_time.replace(tzinfo=timezone.utc)
            return self.date_time.astimezone(timezone.utc)
        if self.date is not None:
            return datetime(self.date.year, self.date.month, self.date.day, tzinfo=timezone.utc)
        raise ValueError("EventTime has neither date nor date_time")


@dataclass
class Attendee:
    """Event attendee."""

    email: str
    display_name: Optional[str] = None
    response_status: Optional[ResponseStatus] = None
    is_self: Optional[bool] = None
    is_organizer: Optional[bool] = None


@dataclass
class Organizer:
    """Event organizer."""

    email: str
    display_name: Optional[str] = None
    is_self: Optional[bool] = None


@dataclass
class CalendarEvent:
    """
    Normalized event representation across calendar providers.

    ``id`` is the composite identity (see calsync.identity) and is unique
    across all connected accounts and calendars.
    """

    id: str
    summary: str
    start: EventTime
    end: EventTime
    account_id: Optional[str] = None
    calendar_id: Optional[str] = None
    status: EventStatus = "confirmed"
    description: Optional[str] = None
    location: Optional[str] = None
    recurrence: list[str] = field(default_factory=list)
    recurring_event_id: Optional[str] = None
    attendees: list[Attendee] = field(default_factory=list)
    organizer: Optional[Organizer] = None
    conference_link: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)

    @property
    def native_id(self) -> str:
        """Provider-native id, derived from the composite id."""
        return extract_native_id(self.id)

    @property
    def is_all_day(self) -> bool:
        return self.start.is_all_day

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence) or self.recurring_event_id is not None


@dataclass
class CalendarInfo:
    """A calendar exposed by an account."""

    id: str
    account_id: str
    summary: str
    access_role: Literal["owner", "writer", "reader", "freeBusyReader"] = "owner"
    color: Optional[str] = None
    description: Optional[str] = None
    primary: bool = False


@dataclass(frozen=True)
class Account:
    """A connected provider account."""

    id: str
    provider: ProviderType = "google"
    display_name: Optional[str] = None


@dataclass
class BusyPeriod:
    """
    A busy time interval.

    Always normalized so that ``start < end``.
    """

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end < self.start:
            self.start, self.end = self.end, self.start


@dataclass
class FetchResult:
    """Result of a full listing."""

    events: list[CalendarEvent]
    continuation_token: Optional[str] = None


@dataclass
class Unchanged:
    """Incremental result: nothing changed since the stored token."""

    next_token: Optional[str]


@dataclass
class Changed:
    """
    Incremental result: events changed or were deleted.

    ``refetched`` marks a provider that resolved an invalidated cursor
    itself by listing the whole window (CalDAV ctag mismatch).
    """

    changed: list[CalendarEvent]
    deleted_ids: list[str]
    next_token: Optional[str]
    refetched: bool = False


@dataclass
class FullSyncRequired:
    """Incremental result: the stored token was rejected by the server."""

    reason: str = "sync token invalidated"


IncrementalResult = Union[Unchanged, Changed, FullSyncRequired]


class CalendarProvider(Protocol):
    """
    Protocol for remote calendar backends.

    Implementations:
    - GoogleCalendarProvider: Google Calendar REST API
    - CalDAVProvider: WebDAV calendar collections

    All methods are async; each is a single cancellable unit of network I/O.
    """

    provider_type: ProviderType

    @abstractmethod
    async def list_calendars(self, account: Account) -> Sequence[CalendarInfo]:
        """List calendars visible to the account."""
        ...

    @abstractmethod
    async def fetch_all(
        self,
        account: Account,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> FetchResult:
        """
        List every event in the window.

        Returns:
            Events plus a fresh continuation token for the next incremental call
        """
        ...

    @abstractmethod
    async def fetch_incremental(
        self,
        account: Account,
        calendar_id: str,
        token: str,
        time_min: datetime,
        time_max: datetime,
    ) -> IncrementalResult:
        """
        List changes since ``token``.

        Returns:
            Unchanged, Changed, or FullSyncRequired when the token is no longer valid
        """
        ...

    @abstractmethod
    async def create_event(
        self,
        account: Account,
        calendar_id: str,
        event: CalendarEvent,
        add_conference: bool = False,
    ) -> CalendarEvent:
        """Create an event and return it with its composite id."""
        ...

    @abstractmethod
    async def update_event(
        self,
        account: Account,
        event_id: str,
        updates: dict,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        original: Optional[CalendarEvent] = None,
        add_conference: bool = False,
    ) -> CalendarEvent:
        """Apply a partial update to an event."""
        ...

    @abstractmethod
    async def delete_event(
        self,
        account: Account,
        event_id: str,
        scope: RecurrenceScope = RecurrenceScope.THIS_INSTANCE,
        recurring_event_id: Optional[str] = None,
    ) -> None:
        """Delete an event; a missing event counts as deleted."""
        ...


UPDATABLE_FIELDS = frozenset({
    "summary",
    "description",
    "location",
    "status",
    "start",
    "end",
    "recurrence",
    "attendees",
    "organizer",
})


def validate_event(event: CalendarEvent) -> None:
    """
    Validate a caller-supplied event before it is sent to a provider.

    Raises:
        ValidationError: If required fields are missing or inconsistent
    """
    if event.start is None or event.end is None:
        raise ValidationError("Event requires both start and end")
    if event.start.date is None and event.start.date_time is None:
        raise ValidationError("Event start has neither date nor date_time")
    if event.end.date is None and event.end.date_time is None:
        raise ValidationError("Event end has neither date nor date_time")
    if event.start.is_all_day != event.end.is_all_day:
        raise ValidationError("Event start and end must both be all-day or both be timed")
    if event.status not in EVENT_STATUSES:
        raise ValidationError(f"Unknown event status: {event.status}")
    if event.end.as_utc() < event.start.as_utc():
        raise ValidationError("Event end is before its start")


def validate_updates(updates: dict) -> None:
    """
    Validate a partial update dict.

    Raises:
        ValidationError: If the dict names unknown fields or an unknown status
    """
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Unknown event fields in update: {sorted(unknown)}")
    if "status" in updates and updates["status"] not in EVENT_STATUSES:
        raise ValidationError(f"Unknown event status: {updates['status']}")
