"""Relational position/state store.

Current positions, append-only history, trips, domain events and the
coordination rows shared by concurrent workers.  SQLite is used in tests,
PostgreSQL in production.
"""

from pygps51.storage.database import check_store, create_db_engine, init_db, make_session_factory, session_scope
from pygps51.storage.schema import (
    Base,
    Credential,
    CurrentPosition,
    Device,
    DomainEvent,
    PositionHistory,
    RateLimitState,
    Trip,
    TripReviewFlag,
    TripSyncCursor,
)

__all__ = [
    "Base",
    "Credential",
    "CurrentPosition",
    "Device",
    "DomainEvent",
    "PositionHistory",
    "RateLimitState",
    "Trip",
    "TripReviewFlag",
    "TripSyncCursor",
    "check_store",
    "create_db_engine",
    "init_db",
    "make_session_factory",
    "session_scope",
]
