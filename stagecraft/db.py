"""Database engine and session management for stagecraft.

The database records pipeline runs, their stage runs and the index of
cooked dependency layers. Several builds may share one SQLite file, so
connections wait for the writer lock instead of failing immediately.

This module handles:
- Engine creation (SQLite parent directories, lock waits)
- Session factories and transactional scopes
- Table creation for the ORM models
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from stagecraft.config import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def _sqlite_path(db_url: str) -> Path | None:
    """Return the database file of a SQLite URL, or None for memory databases."""
    db_path = db_url.split(":///", 1)[1] if ":///" in db_url else ""
    if not db_path or db_path == ":memory:":
        return None
    return Path(db_path)


def get_engine(db_url: str | None = None, lock_timeout: int | None = None) -> Engine:
    """Create and return a SQLAlchemy engine.

    Args:
        db_url: Database URL. If not provided, uses settings default.
        lock_timeout: Seconds a SQLite connection waits for another
            build's write lock. Defaults to the configured lock timeout.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None or lock_timeout is None:
        settings = get_settings()
        db_url = db_url or settings.db_url
        lock_timeout = lock_timeout or settings.lock_timeout

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = lock_timeout
        db_path = _sqlite_path(db_url)
        if db_path is not None:
            db_path.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create and return a session factory.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.

    Returns:
        Session factory (sessionmaker).
    """
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations.

    Args:
        session_factory: Optional session factory. Creates one if not provided.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the run and cache tables if they do not exist.

    Args:
        engine: SQLAlchemy engine. If not provided, creates one from settings.
    """
    # Register models with the mapper before creating tables
    from stagecraft.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def open_database(settings: Settings) -> sessionmaker[Session]:
    """Prepare the configured database and return a session factory for it."""
    engine = get_engine(settings.db_url, settings.lock_timeout)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_database",
]
