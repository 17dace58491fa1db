"""Pytest configuration and fixtures for FlowSense tests."""

import tempfile

from datetime import datetime
from pathlib import Path

import pytest


def pytest_configure(config):
    """Register custom test markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests that do not require external dependencies"
    )
    config.addinivalue_line(
        "markers", "business_logic: Tests for core business logic and algorithms"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests combining multiple components"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time (>5 seconds)"
    )


# =============================================================================
# Database Test Fixtures
# =============================================================================


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    temp_dir = Path(tempfile.gettempdir())
    db_path = temp_dir / f"test_flowsense_{datetime.now().timestamp()}.db"

    yield db_path

    # Cleanup
    if db_path.exists():
        db_path.unlink()
    for ext in ["-wal", "-shm"]:
        wal_file = Path(str(db_path) + ext)
        if wal_file.exists():
            wal_file.unlink()


@pytest.fixture
def db_session(temp_db):
    """Create fresh database session for each test with proper isolation."""
    from sqlalchemy import create_engine, event
    from sqlalchemy.orm import sessionmaker

    from flowsense.database.models import Base

    engine = create_engine(f"sqlite:///{temp_db}")

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)

    Session = sessionmaker(bind=engine)
    session = Session()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def initialized_db(temp_db):
    """Initialize the global session factory on a temporary database."""
    from flowsense.database.session import cleanup_database, init_database

    cleanup_database()
    init_database(str(temp_db))

    yield temp_db

    cleanup_database()


@pytest.fixture
def store(initialized_db):
    """EventStore bound to the temporary database."""
    from flowsense.database.store import EventStore

    return EventStore()


@pytest.fixture
def rules_config():
    """Configuration using the local rule classifier (no network)."""
    from flowsense.config import ClassifierConfig, FlowSenseConfig

    return FlowSenseConfig(classifier=ClassifierConfig(backend="rules"))


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config and log files out of the real home directory."""
    data_dir = tmp_path / "flowsense-home"
    monkeypatch.setattr("flowsense.config.DEFAULT_DATA_DIR", data_dir)
    monkeypatch.setattr("flowsense.logging_config.DEFAULT_LOG_DIR", data_dir / "logs")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return data_dir
