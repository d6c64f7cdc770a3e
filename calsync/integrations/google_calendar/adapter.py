"""
Bidirectional mapping between CalendarEvent and Google Calendar API format.

Handles:
- DateTime formatting (RFC 3339 for Google API)
- All-day event handling
- Composite identity tagging
- Attendee and organizer mapping
- Conference link extraction
- Free/busy responses
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from dateutil.parser import parse as parse_datetime

from calsync.identity import make_composite_id
from calsync.integrations.base import (
    Attendee,
    BusyPeriod,
    CalendarEvent,
    CalendarInfo,
    EventTime,
    Organizer,
)

logger = logging.getLogger(__name__)

VALID_STATUSES = ("confirmed", "tentative", "cancelled")
VALID_RESPONSES = ("needsAction", "declined", "tentative", "accepted")
VALID_ACCESS_ROLES = ("owner", "writer", "reader", "freeBusyReader")


class GoogleCalendarAdapter:
    """Maps between CalendarEvent and Google Calendar API format."""

    @staticmethod
    def from_google_event(
        google_event: dict,
        account_id: Optional[str],
        calendar_id: str,
    ) -> CalendarEvent:
        """
        Convert Google Calendar event to internal format.

        Args:
            google_event: Event from Google Calendar API
            account_id: Account the event was fetched with
            calendar_id: Calendar ID the event belongs to

        Returns:
            CalendarEvent keyed by its composite id
        """
        status = google_event.get("status", "confirmed")
        if status not in VALID_STATUSES:
            status = "confirmed"

        attendees = []
        for attendee in google_event.get("attendees", []):
            email = attendee.get("email")
            if not email:
                continue
            response = attendee.get("responseStatus")
            attendees.append(
                Attendee(
                    email=email,
                    display_name=attendee.get("displayName"),
                    response_status=response if response in VALID_RESPONSES else None,
                    is_self=attendee.get("self"),
                    is_organizer=attendee.get("organizer"),
                )
            )

        organizer = None
        organizer_data = google_event.get("organizer")
        if organizer_data and organizer_data.get("email"):
            organizer = Organizer(
                email=organizer_data["email"],
                display_name=organizer_data.get("displayName"),
                is_self=organizer_data.get("self"),
            )

        recurring_event_id = google_event.get("recurringEventId")

        return CalendarEvent(
            id=make_composite_id(account_id, google_event.get("id", ""), calendar_id),
            account_id=account_id,
            calendar_id=calendar_id,
            summary=google_event.get("summary", ""),
            description=google_event.get("description"),
            location=google_event.get("location"),
            status=status,
            start=_parse_event_time(google_event.get("start", {})),
            end=_parse_event_time(google_event.get("end", {})),
            recurrence=list(google_event.get("recurrence", [])),
            recurring_event_id=recurring_event_id,
            attendees=attendees,
            organizer=organizer,
            conference_link=_conference_link(google_event),
            created_at=_parse_optional_datetime(google_event.get("created")),
            updated_at=_parse_optional_datetime(google_event.get("updated")),
            metadata={
                "etag": google_event.get("etag"),
                "html_link": google_event.get("htmlLink"),
                "event_type": google_event.get("eventType", "default"),
            },
        )

    @staticmethod
    def to_google_event(event: CalendarEvent) -> dict:
        """
        Convert an event to a Google Calendar insert body.

        Args:
            event: Event to create

        Returns:
            Dict suitable for Google Calendar API insert
        """
        google_event: dict = {
            "summary": event.summary,
            "status": event.status,
            "start": _format_event_time(event.start),
            "end": _format_event_time(event.end),
        }

        if event.description:
            google_event["description"] = event.description

        if event.location:
            google_event["location"] = event.location

        if event.attendees:
            google_event["attendees"] = [_format_attendee(a) for a in event.attendees]

        if event.recurrence:
            google_event["recurrence"] = [
                rule if ":" in rule else f"RRULE:{rule}" for rule in event.recurrence
            ]

        return google_event

    @staticmethod
    def to_update_body(updates: dict) -> dict:
        """
        Convert an update dict (CalendarEvent field names) to a PATCH body.

        Args:
            updates: Dict of field updates

        Returns:
            Dict suitable for Google Calendar API patch
        """
        google_updates: dict = {}

        for key in ("summary", "description", "location", "status"):
            if key in updates:
                google_updates[key] = updates[key]

        if "start" in updates:
            google_updates["start"] = _format_event_time(updates["start"])

        if "end" in updates:
            google_updates["end"] = _format_event_time(updates["end"])

        if "attendees" in updates:
            google_updates["attendees"] = [
                _format_attendee(a) for a in updates["attendees"] or []
            ]

        if "recurrence" in updates:
            google_updates["recurrence"] = [
                rule if ":" in rule else f"RRULE:{rule}" for rule in updates["recurrence"] or []
            ]

        return google_updates

    @staticmethod
    def to_calendar_info(entry: dict, account_id: str) -> CalendarInfo:
        """Convert a calendarList entry."""
        access_role = entry.get("accessRole", "reader")
        return CalendarInfo(
            id=entry["id"],
            account_id=account_id,
            summary=entry.get("summaryOverride") or entry.get("summary", entry["id"]),
            description=entry.get("description"),
            color=entry.get("backgroundColor"),
            access_role=access_role if access_role in VALID_ACCESS_ROLES else "reader",
            primary=bool(entry.get("primary", False)),
        )

    @staticmethod
    def parse_freebusy_response(
        response: dict,
        ids: list[str],
    ) -> dict[str, list[BusyPeriod]]:
        """
        Parse Google Calendar freebusy response.

        Args:
            response: Response from freebusy.query API
            ids: Calendar ids / emails that were queried

        Returns:
            Dict mapping each queried id to its busy periods (empty on per-id errors)
        """
        result: dict[str, list[BusyPeriod]] = {}
        calendars = response.get("calendars", {})

        for calendar_id in ids:
            calendar_data = calendars.get(calendar_id)
            if not calendar_data:
                result[calendar_id] = []
                continue
            if calendar_data.get("errors"):
                logger.warning(f"Free/busy errors for {calendar_id}: {calendar_data['errors']}")
                result[calendar_id] = []
                continue
            result[calendar_id] = [
                BusyPeriod(start=_parse_datetime(busy["start"]), end=_parse_datetime(busy["end"]))
                for busy in calendar_data.get("busy", [])
            ]

        return result


def _conference_link(google_event: dict) -> Optional[str]:
    if google_event.get("hangoutLink"):
        return google_event["hangoutLink"]
    entry_points = google_event.get("conferenceData", {}).get("entryPoints", [])
    for entry in entry_points:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            return entry["uri"]
    return None


def _format_attendee(attendee: Attendee) -> dict:
    data = {"email": attendee.email}
    if attendee.display_name:
        data["displayName"] = attendee.display_name
    if attendee.response_status:
        data["responseStatus"] = attendee.response_status
    return data


def _format_event_time(value: EventTime) -> dict:
    """Format an EventTime as a Google start/end object."""
    if value.is_all_day:
        return {"date": value.date.isoformat()}

    data = {"dateTime": _format_datetime(value.date_time)}
    data["timeZone"] = value.time_zone or "UTC"
    return data


def _parse_event_time(data: dict) -> EventTime:
    """Parse a Google start/end object."""
    if data.get("dateTime"):
        return EventTime(
            date_time=_parse_datetime(data["dateTime"]),
            time_zone=data.get("timeZone") or None,
        )
    if data.get("date"):
        return EventTime.all_day(_parse_date(data["date"]))
    # Fallback for malformed payloads
    return EventTime(date_time=datetime.now(timezone.utc), time_zone="UTC")


def _format_datetime(dt: datetime) -> str:
    """
    Format datetime to RFC 3339 format for Google API.

    Args:
        dt: Datetime to format (naive values are taken as UTC)

    Returns:
        RFC 3339 formatted string
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _parse_datetime(dt_str: str) -> datetime:
    """
    Parse datetime string from Google API.

    Args:
        dt_str: RFC 3339 datetime string

    Returns:
        Parsed datetime (UTC if no offset was given)
    """
    dt = parse_datetime(dt_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_optional_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    if not dt_str:
        return None
    return _parse_datetime(dt_str)


def _parse_date(date_str: str) -> date:
    """
    Parse date string from Google API (for all-day events).

    Args:
        date_str: Date string in YYYY-MM-DD format

    Returns:
        Civil date
    """
    return datetime.strptime(date_str, "%Y-%m-%d").date()
