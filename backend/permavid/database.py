"""Database connection and session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from pathlib import Path
import logging

from permavid.models.database import Base
from permavid.config import settings

logger = logging.getLogger(__name__)


def _make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # Make sure the directory of a file-backed SQLite database exists
        db_file = database_url.split("///", 1)[-1]
        if db_file and db_file != ":memory:":
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        # The scheduler and request handlers share the engine across threads
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


engine = _make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None) -> int:
    """Create missing tables and run pending migrations. Returns the number of migrations applied."""
    bind = bind or engine
    # Create tables that don't exist yet (no-op for existing tables)
    Base.metadata.create_all(bind=bind)
    # Bring legacy databases up to the current schema
    from permavid.migrations.runner import run_migrations
    applied = run_migrations(bind)
    if applied:
        logger.info(f"Database initialized, {applied} migration(s) applied")
    else:
        logger.info("Database initialized, schema up to date")
    return applied
