"""Database layer for FlowSense."""

from flowsense.database.session import (
    cleanup_database,
    init_database,
    session_scope,
)
from flowsense.database.store import EventStore

__all__ = [
    "EventStore",
    "cleanup_database",
    "init_database",
    "session_scope",
]
