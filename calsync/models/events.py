"""
Locally cached events.

One row per composite event id. Start and end are stored as the JSON
form of EventTime so all-day, zoned and floating values survive a round
trip; ``start_utc``/``end_utc`` are derived columns for range queries.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from calsync.models.base import Base, JSONColumn


class StoredEvent(Base):
    """
    An event as held in the local store.

    Attributes:
        id: Composite identity (account, calendar, native id)
        account_id: Account the event was fetched from (None for local-only events)
        calendar_id: Calendar id (Google id or CalDAV collection URL)
        start / end: EventTime as JSON ({"date"} or {"dateTime", "timeZone"})
        event_metadata: Provider extras (etag, html link, event type)
    """

    __tablename__ = "events"

    id: Mapped[str] = mapped_column(
        String(2048),
        primary_key=True,
        doc="Composite event id"
    )

    account_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        doc="Account email the event belongs to"
    )

    calendar_id: Mapped[Optional[str]] = mapped_column(
        String(1024),
        nullable=True,
        doc="Calendar the event belongs to"
    )

    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="confirmed",
        doc="confirmed, tentative or cancelled"
    )

    start: Mapped[dict] = mapped_column(JSONColumn, nullable=False)
    end: Mapped[dict] = mapped_column(JSONColumn, nullable=False)

    start_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        doc="Start instant in UTC (all-day and floating read as UTC)"
    )

    end_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        doc="End instant in UTC"
    )

    all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    recurrence: Mapped[list] = mapped_column(JSONColumn, nullable=False, default=list)
    recurring_event_id: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    attendees: Mapped[list] = mapped_column(JSONColumn, nullable=False, default=list)
    organizer: Mapped[Optional[dict]] = mapped_column(JSONColumn, nullable=True)
    conference_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    remote_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    remote_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    event_metadata: Mapped[dict] = mapped_column(JSONColumn, nullable=False, default=dict)

    synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        doc="When this row was last written by a sync"
    )

    __table_args__ = (
        Index("ix_events_account_calendar", "account_id", "calendar_id"),
        Index("ix_events_time_range", "start_utc", "end_utc"),
    )

    def __repr__(self) -> str:
        return f"<StoredEvent(id={self.id!r}, summary={self.summary!r})>"
