"""
Local event store.

The orchestrator writes change-sets through the small contract below;
SQLAlchemyEventStore is the relational implementation.
"""

import logging
from datetime import date, datetime
from typing import Optional, Protocol, Sequence

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from calsync.database import session_scope
from calsync.integrations.base import Attendee, CalendarEvent, EventTime, Organizer
from calsync.models.base import as_utc
from calsync.models.events import StoredEvent

logger = logging.getLogger(__name__)


class LocalEventStore(Protocol):
    """Contract the sync core needs from the local event cache."""

    def upsert(self, event: CalendarEvent) -> None:
        ...

    def delete(self, event_id: str) -> None:
        ...

    def delete_by_account(self, account_id: str) -> None:
        ...

    def get_all(self) -> Sequence[CalendarEvent]:
        ...

    def is_empty(self) -> bool:
        ...


def event_time_to_json(value: EventTime) -> dict:
    """Serialize an EventTime for a JSON column."""
    if value.is_all_day:
        return {"date": value.date.isoformat()}
    return {
        "dateTime": value.date_time.isoformat(),
        "timeZone": value.time_zone,
    }


def event_time_from_json(data: dict) -> EventTime:
    if data.get("date"):
        return EventTime.all_day(date.fromisoformat(data["date"]))
    return EventTime(
        date_time=datetime.fromisoformat(data["dateTime"]),
        time_zone=data.get("timeZone"),
    )


def _attendee_to_json(attendee: Attendee) -> dict:
    return {
        "email": attendee.email,
        "displayName": attendee.display_name,
        "responseStatus": attendee.response_status,
        "self": attendee.is_self,
        "organizer": attendee.is_organizer,
    }


def _attendee_from_json(data: dict) -> Attendee:
    return Attendee(
        email=data["email"],
        display_name=data.get("displayName"),
        response_status=data.get("responseStatus"),
        is_self=data.get("self"),
        is_organizer=data.get("organizer"),
    )


def event_to_record(event: CalendarEvent, record: Optional[StoredEvent] = None) -> StoredEvent:
    """Copy an event onto a (new or existing) StoredEvent row."""
    record = record or StoredEvent(id=event.id)
    record.account_id = event.account_id
    record.calendar_id = event.calendar_id
    record.summary = event.summary or ""
    record.description = event.description
    record.location = event.location
    record.status = event.status
    record.start = event_time_to_json(event.start)
    record.end = event_time_to_json(event.end)
    record.start_utc = event.start.as_utc()
    record.end_utc = event.end.as_utc()
    record.all_day = event.is_all_day
    record.recurrence = list(event.recurrence)
    record.recurring_event_id = event.recurring_event_id
    record.attendees = [_attendee_to_json(a) for a in event.attendees]
    record.organizer = (
        {
            "email": event.organizer.email,
            "displayName": event.organizer.display_name,
            "self": event.organizer.is_self,
        }
        if event.organizer
        else None
    )
    record.conference_link = event.conference_link
    record.remote_created_at = event.created_at
    record.remote_updated_at = event.updated_at
    record.event_metadata = dict(event.metadata)
    return record


def record_to_event(record: StoredEvent) -> CalendarEvent:
    organizer = None
    if record.organizer:
        organizer = Organizer(
            email=record.organizer["email"],
            display_name=record.organizer.get("displayName"),
            is_self=record.organizer.get("self"),
        )
    return CalendarEvent(
        id=record.id,
        account_id=record.account_id,
        calendar_id=record.calendar_id,
        summary=record.summary,
        description=record.description,
        location=record.location,
        status=record.status,
        start=event_time_from_json(record.start),
        end=event_time_from_json(record.end),
        recurrence=list(record.recurrence or []),
        recurring_event_id=record.recurring_event_id,
        attendees=[_attendee_from_json(a) for a in record.attendees or []],
        organizer=organizer,
        conference_link=record.conference_link,
        created_at=as_utc(record.remote_created_at),
        updated_at=as_utc(record.remote_updated_at),
        metadata=dict(record.event_metadata or {}),
    )


class SQLAlchemyEventStore:
    """LocalEventStore backed by the ``events`` table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def upsert(self, event: CalendarEvent) -> None:
        with session_scope(self._session_factory) as session:
            record = session.get(StoredEvent, event.id)
            if record is None:
                session.add(event_to_record(event))
            else:
                event_to_record(event, record)

    def upsert_many(self, events: Sequence[CalendarEvent]) -> None:
        """Upsert a batch in one transaction."""
        if not events:
            return
        with session_scope(self._session_factory) as session:
            for event in events:
                record = session.get(StoredEvent, event.id)
                if record is None:
                    session.add(event_to_record(event))
                else:
                    event_to_record(event, record)
        logger.debug(f"Upserted {len(events)} events")

    def delete(self, event_id: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(StoredEvent).where(StoredEvent.id == event_id))

    def delete_many(self, event_ids: Sequence[str]) -> None:
        if not event_ids:
            return
        with session_scope(self._session_factory) as session:
            session.execute(delete(StoredEvent).where(StoredEvent.id.in_(list(event_ids))))
        logger.debug(f"Deleted {len(event_ids)} events")

    def delete_by_account(self, account_id: str) -> None:
        with session_scope(self._session_factory) as session:
            result = session.execute(delete(StoredEvent).where(StoredEvent.account_id == account_id))
        logger.info(f"Deleted {result.rowcount} local events for {account_id}")

    def get_all(self) -> list[CalendarEvent]:
        with session_scope(self._session_factory) as session:
            records = session.execute(
                select(StoredEvent).order_by(StoredEvent.start_utc)
            ).scalars().all()
            return [record_to_event(record) for record in records]

    def get_by_id(self, event_id: str) -> Optional[CalendarEvent]:
        with session_scope(self._session_factory) as session:
            record = session.get(StoredEvent, event_id)
            return record_to_event(record) if record else None

    def get_in_range(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Events overlapping ``[start, end)``."""
        start, end = as_utc(start), as_utc(end)
        with session_scope(self._session_factory) as session:
            records = session.execute(
                select(StoredEvent)
                .where(StoredEvent.start_utc < end, StoredEvent.end_utc > start)
                .order_by(StoredEvent.start_utc)
            ).scalars().all()
            return [record_to_event(record) for record in records]

    def is_empty(self) -> bool:
        with session_scope(self._session_factory) as session:
            return session.execute(select(StoredEvent.id).limit(1)).first() is None

    def clear(self) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(StoredEvent))
        logger.info("Cleared local event store")
