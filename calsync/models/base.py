"""
Base model definitions for SQLAlchemy.

Provides:
- GUID TypeDecorator for UUID keys across SQLite and PostgreSQL
- Declarative base and a timestamped abstract model
- JSON/JSONB column type selection
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, JSON, TypeDecorator, func
from sqlalchemy.dialects.postgresql import JSONB, UUID as PostgreSQL_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR


class GUID(TypeDecorator):
    """
    Platform-independent GUID type.

    PostgreSQL's UUID type on PostgreSQL, CHAR(32) hex elsewhere.
    """

    impl = CHAR(32)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PostgreSQL_UUID())
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return str(value)
        if isinstance(value, uuid.UUID):
            return value.hex
        return uuid.UUID(value).hex

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


# JSONB on PostgreSQL (indexable), plain JSON on SQLite
JSONColumn = JSON().with_variant(JSONB(), "postgresql")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Re-attach UTC to a timestamp read back from the database.

    SQLite drops tzinfo on DateTime(timezone=True) columns.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for all models."""

    type_annotation_map = {
        uuid.UUID: GUID,
    }


class TimestampedModel(Base):
    """
    Abstract model with a UUID key and row audit timestamps.

    ``created_at``/``updated_at`` describe the local row, not the remote object.
    """

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        GUID,
        primary_key=True,
        default=uuid.uuid4,
        doc="Unique identifier (UUID)"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        doc="Timestamp of record creation (UTC)"
    )

    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
        doc="Timestamp of last update (UTC)"
    )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(id={self.id})>"
