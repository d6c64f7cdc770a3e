"""
Database configuration and session management.

Provides:
- Engine creation with SQLite/PostgreSQL specific configuration
- Session factory and a transactional session context manager
- Table creation for development and tests (production uses Alembic)
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from calsync.config import Settings, get_settings

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key constraints in SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(
    database_url: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Engine:
    """
    Create an engine configured for the database type.

    Args:
        database_url: Override for ``settings.database_url``
        settings: Settings to read defaults from

    Returns:
        SQLAlchemy Engine
    """
    settings = settings or get_settings()
    url = database_url or settings.database_url
    echo = settings.log_level == "DEBUG"

    if "sqlite" in url.lower():
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},  # Sync passes run off the main thread
            poolclass=StaticPool,  # Single-file (or in-memory) database
            echo=echo,
        )
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    else:
        engine = create_engine(
            url,
            pool_size=5,
            pool_recycle=3600,
            pool_pre_ping=True,
            echo=echo,
        )
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with explicit commits."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as session:
            session.add(record)
            # Automatic commit on context exit

    Yields:
        Session: SQLAlchemy database session
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """
    Create all tables.

    Useful for development and tests. In production, use Alembic migrations.
    """
    from calsync.models import Base

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully")


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables.

    WARNING: This deletes all cached events and sync cursors.
    """
    from calsync.models import Base

    logger.warning("Dropping all database tables...")
    Base.metadata.drop_all(bind=engine)
    logger.info("All database tables dropped")
