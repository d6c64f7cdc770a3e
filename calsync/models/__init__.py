"""
SQLAlchemy models for calsync.

Exports every model so Alembic can discover them for migrations.
"""

from calsync.models.base import Base, GUID, JSONColumn, TimestampedModel
from calsync.models.events import StoredEvent
from calsync.models.sync_cursors import SyncCursorRecord
from calsync.models.tokens import AccountToken

__all__ = [
    # Base classes
    "Base",
    "GUID",
    "JSONColumn",
    "TimestampedModel",
    # Models
    "AccountToken",
    "StoredEvent",
    "SyncCursorRecord",
]
