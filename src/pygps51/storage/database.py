"""Engine and session management for the position/state store.

Every record write runs in its own short transaction obtained from
:func:`session_scope`, so a cancelled or failed job never leaves a torn
write behind and concurrent workers only contend on single rows.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pygps51.exceptions import Gps51StoreError
from pygps51.storage.schema import Base

_logger = logging.getLogger(__name__)


def create_db_engine(url: str, *, statement_timeout: float | None = None, echo: bool = False) -> Engine:
    """Create an engine for *url*.

    On PostgreSQL every connection gets a server-side ``statement_timeout``.
    In-memory SQLite URLs share one connection so every session sees the
    same database.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    else:
        kwargs["pool_pre_ping"] = True
        if statement_timeout and url.startswith("postgresql"):
            timeout_ms = int(statement_timeout * 1000)
            kwargs["connect_args"] = {"options": f"-c statement_timeout={timeout_ms}"}

    engine = create_engine(url, **kwargs)

    if url.startswith("sqlite"):

        # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; take over
        # transaction control so nested transactions behave.
        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection: Any, _record: Any) -> None:
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn: Any) -> None:
            conn.exec_driver_sql("BEGIN")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables.  Existing tables are left untouched."""
    _logger.debug("Creating tables on %s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(bind=engine)


@contextlib.contextmanager
def session_scope(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()


def check_store(factory: sessionmaker[Session]) -> None:
    """Fail fast with :class:`Gps51StoreError` when the store is unreachable."""
    try:
        with session_scope(factory) as session:
            session.connection()
    except SQLAlchemyError as exc:
        raise Gps51StoreError(f"Store unavailable: {exc}") from exc
