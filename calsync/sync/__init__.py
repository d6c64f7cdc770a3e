"""Sync core: cursors, local store, orchestrator and background loop."""

from calsync.sync.background import BackgroundSync
from calsync.sync.orchestrator import CalendarSyncOutcome, ChangeSet, SyncOrchestrator, SyncReport
from calsync.sync.state import (
    EMPTY_CURSOR,
    InMemorySyncStateStore,
    SQLAlchemySyncStateStore,
    SyncCursor,
    SyncStateStore,
)
from calsync.sync.store import LocalEventStore, SQLAlchemyEventStore

__all__ = [
    "BackgroundSync",
    "CalendarSyncOutcome",
    "ChangeSet",
    "EMPTY_CURSOR",
    "InMemorySyncStateStore",
    "LocalEventStore",
    "SQLAlchemyEventStore",
    "SQLAlchemySyncStateStore",
    "SyncCursor",
    "SyncOrchestrator",
    "SyncReport",
    "SyncStateStore",
]
