"""
Sync cursor persistence model.

One row per (account, calendar): the continuation token (REST sync
token or CalDAV ctag) and when the calendar was last fully listed.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from calsync.models.base import TimestampedModel


class SyncCursorRecord(TimestampedModel):
    """Stored sync cursor for one calendar of one account."""

    __tablename__ = "sync_cursors"

    account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        doc="Account email"
    )

    calendar_id: Mapped[str] = mapped_column(
        String(1024),
        nullable=False,
        doc="Calendar id (Google id or CalDAV collection URL)"
    )

    token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Opaque continuation token; NULL forces a full sync"
    )

    last_full_sync_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="When the calendar was last fully listed"
    )

    __table_args__ = (
        UniqueConstraint("account_id", "calendar_id", name="uq_sync_cursors_account_calendar"),
    )

    def __repr__(self) -> str:
        return f"<SyncCursorRecord(account_id={self.account_id}, calendar_id={self.calendar_id})>"
