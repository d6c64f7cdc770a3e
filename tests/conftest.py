"""
Pytest configuration and shared fixtures for calsync tests.

Provides an in-memory database, settings without a .env file, and
small event/account builders.
"""

from datetime import datetime, timezone
from typing import Generator

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from calsync.config import Settings
from calsync.database import create_db_engine, drop_all_tables, init_db, make_session_factory
from calsync.identity import make_composite_id
from calsync.integrations.base import Account, CalendarEvent, EventTime


@pytest.fixture
def settings() -> Settings:
    """Settings with defaults only (no .env, no environment overrides)."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        sync_concurrency=2,
        provider_call_timeout=5.0,
    )


@pytest.fixture
def engine(settings) -> Generator[Engine, None, None]:
    """In-memory SQLite engine with all tables created."""
    engine = create_db_engine(settings=settings)
    init_db(engine)
    try:
        yield engine
    finally:
        drop_all_tables(engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker:
    return make_session_factory(engine)


@pytest.fixture
def google_account() -> Account:
    return Account(id="me@example.com", provider="google", display_name="Me Example")


@pytest.fixture
def caldav_account() -> Account:
    return Account(id="me@fastmail.com", provider="caldav", display_name="Me Fastmail")


def make_event(
    native_id: str = "evt-1",
    account_id: str = "me@example.com",
    calendar_id: str = "primary",
    summary: str = "Meeting",
    start: datetime = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc),
    end: datetime = datetime(2026, 3, 2, 11, 0, tzinfo=timezone.utc),
    **kwargs,
) -> CalendarEvent:
    """Build a timed event keyed by its composite id."""
    return CalendarEvent(
        id=make_composite_id(account_id, native_id, calendar_id),
        account_id=account_id,
        calendar_id=calendar_id,
        summary=summary,
        start=EventTime.at(start),
        end=EventTime.at(end),
        **kwargs,
    )


@pytest.fixture
def event_factory():
    """The make_event builder, for tests that need several events."""
    return make_event
