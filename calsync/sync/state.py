"""
Sync state store.

Holds one SyncCursor per (account, calendar). The token is opaque: a
Google sync token for REST calendars, a ctag for CalDAV calendars.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import sessionmaker

from calsync.database import session_scope
from calsync.identity import calendar_key, parse_calendar_key
from calsync.models.base import as_utc
from calsync.models.sync_cursors import SyncCursorRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncCursor:
    """Continuation state for one calendar."""

    token: Optional[str] = None
    last_full_sync_at: Optional[datetime] = None


EMPTY_CURSOR = SyncCursor()


class SyncStateStore(Protocol):
    """Persistence contract for sync cursors."""

    def get(self, account_id: str, calendar_id: str) -> SyncCursor:
        ...

    def set(self, account_id: str, calendar_id: str, cursor: SyncCursor) -> None:
        ...

    def clear(self, account_id: str, calendar_id: str) -> None:
        ...

    def clear_account(self, account_id: str) -> None:
        ...

    def clear_all(self) -> None:
        ...

    def last_full_sync(self) -> Optional[datetime]:
        ...


class InMemorySyncStateStore:
    """Dict-backed SyncStateStore keyed by calendar key."""

    def __init__(self):
        self._cursors: dict[str, SyncCursor] = {}

    def get(self, account_id: str, calendar_id: str) -> SyncCursor:
        return self._cursors.get(calendar_key(account_id, calendar_id), EMPTY_CURSOR)

    def set(self, account_id: str, calendar_id: str, cursor: SyncCursor) -> None:
        self._cursors[calendar_key(account_id, calendar_id)] = cursor

    def clear(self, account_id: str, calendar_id: str) -> None:
        self._cursors.pop(calendar_key(account_id, calendar_id), None)

    def clear_account(self, account_id: str) -> None:
        for key in list(self._cursors):
            parsed = parse_calendar_key(key)
            if parsed is not None and parsed[0] == account_id:
                del self._cursors[key]

    def clear_all(self) -> None:
        self._cursors.clear()

    def last_full_sync(self) -> Optional[datetime]:
        stamps = [c.last_full_sync_at for c in self._cursors.values() if c.last_full_sync_at]
        return max(stamps) if stamps else None

    def keys(self) -> list[str]:
        return list(self._cursors)


class SQLAlchemySyncStateStore:
    """
    SyncStateStore backed by the ``sync_cursors`` table.

    Each call runs in its own transaction, so a cursor is replaced atomically.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, account_id: str, calendar_id: str) -> SyncCursor:
        with session_scope(self._session_factory) as session:
            record = session.execute(
                select(SyncCursorRecord).where(
                    SyncCursorRecord.account_id == account_id,
                    SyncCursorRecord.calendar_id == calendar_id,
                )
            ).scalar_one_or_none()
            if record is None:
                return EMPTY_CURSOR
            return SyncCursor(
                token=record.token,
                last_full_sync_at=as_utc(record.last_full_sync_at),
            )

    def set(self, account_id: str, calendar_id: str, cursor: SyncCursor) -> None:
        with session_scope(self._session_factory) as session:
            record = session.execute(
                select(SyncCursorRecord).where(
                    SyncCursorRecord.account_id == account_id,
                    SyncCursorRecord.calendar_id == calendar_id,
                )
            ).scalar_one_or_none()
            if record is None:
                record = SyncCursorRecord(account_id=account_id, calendar_id=calendar_id)
                session.add(record)
            record.token = cursor.token
            record.last_full_sync_at = cursor.last_full_sync_at
        logger.debug(f"Stored sync cursor for {account_id} / {calendar_id}")

    def clear(self, account_id: str, calendar_id: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                delete(SyncCursorRecord).where(
                    SyncCursorRecord.account_id == account_id,
                    SyncCursorRecord.calendar_id == calendar_id,
                )
            )

    def clear_account(self, account_id: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(
                delete(SyncCursorRecord).where(SyncCursorRecord.account_id == account_id)
            )
        logger.info(f"Cleared sync cursors for {account_id}")

    def clear_all(self) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(SyncCursorRecord))
        logger.info("Cleared all sync cursors")

    def last_full_sync(self) -> Optional[datetime]:
        with session_scope(self._session_factory) as session:
            value = session.execute(
                select(func.max(SyncCursorRecord.last_full_sync_at))
            ).scalar_one_or_none()
            return as_utc(value)
