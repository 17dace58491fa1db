"""
SQLite engine and transactional sessions.

One engine per process, shared by the ingestion threads; every EventStore
operation runs in its own session_scope.
"""

import threading

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from flowsense.constants import DEFAULT_DATABASE_PATH
from flowsense.database.models import Base

_engine: Engine | None = None
_SessionFactory: sessionmaker[Session] | None = None
_init_lock = threading.Lock()


def _sqlite_engine(database_path: Path) -> Engine:
    engine = create_engine(
        f"sqlite:///{database_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    return engine


def init_database(database_path: str | None = None) -> None:
    """
    Open the database and create missing tables. No-op if already open.

    Args:
        database_path: SQLite file; defaults to DEFAULT_DATABASE_PATH

    Raises:
        PermissionError: If the database directory cannot be created
    """
    global _engine, _SessionFactory

    with _init_lock:
        if _engine is not None:
            return

        path = Path(database_path or DEFAULT_DATABASE_PATH)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            raise PermissionError(
                f"Cannot create database directory {path.parent}: {e}"
            ) from e

        _engine = _sqlite_engine(path)
        Base.metadata.create_all(_engine)
        _SessionFactory = sessionmaker(bind=_engine, expire_on_commit=False)


@contextmanager
def session_scope() -> Generator[Session]:
    """
    Session that commits on success and rolls back on error.

    Raises:
        RuntimeError: If init_database() has not been called
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    session = _SessionFactory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def cleanup_database() -> None:
    """Dispose of the engine so the next init_database() opens a fresh one."""
    global _engine, _SessionFactory

    with _init_lock:
        if _engine is not None:
            _engine.dispose()
        _engine = None
        _SessionFactory = None
