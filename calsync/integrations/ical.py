"""
iCalendar (RFC 5545) codec.

Translates VEVENT components to and from CalendarEvent on top of the
``icalendar`` library. Stateless: no network or storage access. Parsing
never raises; a VEVENT that cannot be mapped (no UID, no usable DTSTART)
is dropped from the result.
"""

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from dateutil import tz
from icalendar import Calendar, Event, vDuration
from icalendar.parser import Contentlines

from calsync.identity import make_composite_id
from calsync.integrations.base import (
    Attendee,
    CalendarEvent,
    EventTime,
    Organizer,
)
from calsync.models.base import as_utc

logger = logging.getLogger(__name__)

PRODID = "-//calsync//Calendar Sync//EN"

PARTSTAT_TO_RESPONSE = {
    "ACCEPTED": "accepted",
    "DECLINED": "declined",
    "TENTATIVE": "tentative",
    "NEEDS-ACTION": "needsAction",
}

RESPONSE_TO_PARTSTAT = {value: key for key, value in PARTSTAT_TO_RESPONSE.items()}

STATUS_FROM_ICAL = {
    "CONFIRMED": "confirmed",
    "TENTATIVE": "tentative",
    "CANCELLED": "cancelled",
}

RECURRENCE_PROPERTIES = ("RRULE", "EXRULE", "RDATE", "EXDATE")


def _as_list(value) -> list:
    """Repeatable properties come back as a single value or a list."""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


# =============================================================================
# Parsing
# =============================================================================


def parse_duration(value: str) -> Optional[timedelta]:
    """
    Parse an RFC 5545 DURATION value.

    Supports ``P[n]W`` and ``P[n]D[T[n]H[n]M[n]S]``. The sign is ignored.
    A ``T`` must be followed by at least one time component.

    Returns:
        The duration, or None if the value does not match the grammar
    """
    candidate = value.strip().upper()
    body = candidate.lstrip("+-")
    if body in ("P", "PT") or body.endswith("T"):
        return None
    try:
        return abs(vDuration.from_ical(candidate))
    except ValueError:
        return None


def to_event_time(prop) -> Optional[EventTime]:
    """
    Convert a decoded DATE or DATE-TIME property to an EventTime.

    Dates are all-day; a TZID parameter keeps the civil time in that zone;
    an aware value without TZID is UTC; anything else is floating.
    """
    value = getattr(prop, "dt", None)
    if value is None:
        return None

    if not isinstance(value, datetime):
        if isinstance(value, date):
            return EventTime.all_day(value)
        return None

    tzid = prop.params.get("TZID") if getattr(prop, "params", None) else None
    if tzid:
        if value.tzinfo is None:
            zone = tz.gettz(tzid)
            if zone is None:
                logger.debug(f"Unknown TZID {tzid!r}; keeping floating time")
                return EventTime(date_time=value, time_zone=tzid)
            value = value.replace(tzinfo=zone)
        return EventTime(date_time=value, time_zone=tzid)

    if value.tzinfo is not None:
        return EventTime(date_time=value.astimezone(tz.UTC), time_zone="UTC")
    return EventTime(date_time=value)


def apply_duration(start: EventTime, duration: timedelta) -> EventTime:
    """
    Compute an end time from a start time, keeping the start's encoding.

    All-day starts round partial days up and always span at least one day.
    """
    if start.is_all_day:
        days = duration.days + (1 if duration.seconds or duration.microseconds else 0)
        return EventTime.all_day(start.date + timedelta(days=max(days, 1)))

    dt = start.date_time
    if dt.tzinfo is None:
        return EventTime(date_time=dt + duration, time_zone=start.time_zone)

    # Exact arithmetic on the instant, then back into the original zone
    end_utc = dt.astimezone(tz.UTC) + duration
    return EventTime(date_time=end_utc.astimezone(dt.tzinfo), time_zone=start.time_zone)


def _extract_email(value) -> str:
    value = str(value).strip()
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:"):]
    return value.strip()


def _timestamp(prop) -> Optional[datetime]:
    value = getattr(prop, "dt", None)
    if not isinstance(value, datetime):
        return None
    return as_utc(value)


def _text(vevent: Event, name: str) -> Optional[str]:
    value = vevent.get(name)
    if value is None:
        return None
    return str(value) or None


def _parse_components(text: str) -> list:
    try:
        return Calendar.from_ical(text, multiple=True)
    except Exception as e:
        logger.warning(f"Discarding unparseable iCalendar data: {e}")
        return []


def _walk_vevents(components: list) -> Iterator[Event]:
    for component in components:
        yield from component.walk("VEVENT")


def _raw_durations(text: str) -> list[Optional[str]]:
    """
    DURATION text of each VEVENT, in document order.

    Decoded durations accept a dangling ``T``, so the raw value is kept
    for validation.
    """
    durations: list[Optional[str]] = []
    stack: list[str] = []
    for line in Contentlines.from_ical(text):
        if not line:
            continue
        try:
            name, _, value = line.parts()
        except ValueError:
            continue
        name = name.upper()
        if name == "BEGIN":
            stack.append(value.upper())
            if stack[-1] == "VEVENT":
                durations.append(None)
        elif name == "END":
            if stack:
                stack.pop()
        elif name == "DURATION" and stack and stack[-1] == "VEVENT" and durations:
            durations[-1] = value
    return durations


def _parse_vevent(
    vevent: Event,
    raw_duration: Optional[str],
    account_id: Optional[str],
    calendar_id: Optional[str],
) -> Optional[CalendarEvent]:
    """Map one VEVENT to a CalendarEvent."""
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        logger.debug("Dropping VEVENT without UID")
        return None

    start = to_event_time(vevent.get("DTSTART"))
    if start is None:
        logger.debug(f"Dropping VEVENT {uid}: missing or malformed DTSTART")
        return None

    end = to_event_time(vevent.get("DTEND"))
    if end is None and raw_duration:
        duration = parse_duration(raw_duration)
        if duration is None:
            logger.debug(f"Ignoring malformed DURATION {raw_duration!r} on {uid}")
        else:
            end = apply_duration(start, duration)
    if end is None:
        end = start

    attendees = []
    for prop in _as_list(vevent.get("ATTENDEE")):
        attendees.append(
            Attendee(
                email=_extract_email(prop),
                display_name=prop.params.get("CN") or None,
                response_status=PARTSTAT_TO_RESPONSE.get(str(prop.params.get("PARTSTAT", "")).upper()),
                is_organizer=True if str(prop.params.get("ROLE", "")).upper() == "CHAIR" else None,
            )
        )

    organizer = None
    organizer_props = _as_list(vevent.get("ORGANIZER"))
    if organizer_props:
        organizer = Organizer(
            email=_extract_email(organizer_props[0]),
            display_name=organizer_props[0].params.get("CN") or None,
        )

    recurrence = [f"RRULE:{rule.to_ical().decode()}" for rule in _as_list(vevent.get("RRULE"))]

    recurrence_id = vevent.get("RECURRENCE-ID")
    status = STATUS_FROM_ICAL.get(str(vevent.get("STATUS", "")).strip().upper(), "confirmed")

    return CalendarEvent(
        id=make_composite_id(account_id, uid, calendar_id),
        summary=_text(vevent, "SUMMARY") or "",
        description=_text(vevent, "DESCRIPTION"),
        location=_text(vevent, "LOCATION"),
        status=status,
        start=start,
        end=end,
        recurrence=recurrence,
        recurring_event_id=recurrence_id.to_ical().decode() if recurrence_id is not None else None,
        attendees=attendees,
        organizer=organizer,
        conference_link=_text(vevent, "URL"),
        created_at=_timestamp(vevent.get("CREATED")),
        updated_at=_timestamp(vevent.get("LAST-MODIFIED")),
        account_id=account_id,
        calendar_id=calendar_id,
    )


def parse_events(
    text: str,
    account_id: Optional[str] = None,
    calendar_id: Optional[str] = None,
) -> list[CalendarEvent]:
    """
    Parse every VEVENT in an iCalendar document.

    Args:
        text: iCalendar data (a VCALENDAR or bare VEVENT blocks)
        account_id: Account to tag events with
        calendar_id: Calendar to tag events with

    Returns:
        Parsed events; invalid VEVENTs are skipped
    """
    components = _parse_components(text)
    if not components:
        return []

    vevents = list(_walk_vevents(components))
    try:
        durations = _raw_durations(text)
    except ValueError:
        durations = []
    if len(durations) != len(vevents):
        durations = [None] * len(vevents)

    events: list[CalendarEvent] = []
    for vevent, raw_duration in zip(vevents, durations):
        try:
            event = _parse_vevent(vevent, raw_duration, account_id, calendar_id)
        except (ValueError, TypeError, AttributeError) as e:
            logger.debug(f"Dropping unmappable VEVENT: {e}")
            continue
        if event is not None:
            events.append(event)

    return events


def extract_uid(text: str) -> Optional[str]:
    """Return the first UID in an iCalendar document, or None."""
    for vevent in _walk_vevents(_parse_components(text)):
        uid = str(vevent.get("UID", "")).strip()
        if uid:
            return uid
    return None


# =============================================================================
# Generation
# =============================================================================


def _add_time(vevent: Event, name: str, value: EventTime) -> None:
    """
    Add DTSTART/DTEND in the value's own encoding.

    All-day values become DATE; UTC values end in ``Z``; zoned values carry
    a TZID parameter and the civil time in that zone.
    """
    if value.is_all_day:
        vevent.add(name, value.date)
        return

    dt = value.date_time
    if value.is_utc or (value.time_zone is None and dt.tzinfo is not None):
        vevent.add(name, dt.astimezone(tz.UTC))
        return

    if value.time_zone:
        zone = tz.gettz(value.time_zone)
        if zone is not None and dt.tzinfo is not None:
            dt = dt.astimezone(zone)
        vevent.add(name, dt.replace(tzinfo=None), parameters={"TZID": value.time_zone})
        return

    vevent.add(name, dt)


def _add_recurrence(vevent: Event, rules: list[str]) -> None:
    """Copy recurrence lines onto the event; bare rules are taken as RRULE."""
    lines = []
    for rule in rules:
        name = rule.split(":", 1)[0].split(";", 1)[0].upper()
        lines.append(rule if name in RECURRENCE_PROPERTIES else f"RRULE:{rule}")
    if not lines:
        return

    fragment = Event.from_ical("BEGIN:VEVENT\r\n" + "\r\n".join(lines) + "\r\nEND:VEVENT\r\n")
    for name in RECURRENCE_PROPERTIES:
        for value in _as_list(fragment.get(name)):
            vevent.add(name, value, encode=False)


def generate_event(event: CalendarEvent, uid: Optional[str] = None) -> str:
    """
    Serialize an event as a VCALENDAR holding one VEVENT.

    Args:
        event: Event to serialize
        uid: UID to write (defaults to the event's native id)

    Returns:
        CRLF-delimited, folded iCalendar text suitable for a CalDAV PUT
    """
    calendar = Calendar()
    calendar.add("version", "2.0")
    calendar.add("prodid", PRODID)

    vevent = Event()
    vevent.add("uid", uid or event.native_id or str(uuid.uuid4()))
    vevent.add("dtstamp", datetime.now(tz.UTC))
    _add_time(vevent, "dtstart", event.start)
    _add_time(vevent, "dtend", event.end)

    if event.summary:
        vevent.add("summary", event.summary)
    if event.description:
        vevent.add("description", event.description)
    if event.location:
        vevent.add("location", event.location)
    if event.conference_link:
        vevent.add("url", event.conference_link)

    vevent.add("status", (event.status or "confirmed").upper())

    if event.organizer:
        params = {"CN": event.organizer.display_name} if event.organizer.display_name else None
        vevent.add("organizer", f"mailto:{event.organizer.email}", parameters=params)

    for attendee in event.attendees:
        params = {}
        if attendee.display_name:
            params["CN"] = attendee.display_name
        if attendee.response_status:
            params["PARTSTAT"] = RESPONSE_TO_PARTSTAT.get(attendee.response_status, "NEEDS-ACTION")
        vevent.add("attendee", f"mailto:{attendee.email}", parameters=params or None)

    _add_recurrence(vevent, event.recurrence)

    if event.created_at:
        vevent.add("created", event.created_at.astimezone(tz.UTC))
    if event.updated_at:
        vevent.add("last-modified", event.updated_at.astimezone(tz.UTC))

    calendar.add_component(vevent)
    return calendar.to_ical().decode("utf-8")
