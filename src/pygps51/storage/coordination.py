"""Cross-worker coordination rows: rate-limit backoff, sync cursors, credentials."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pygps51.storage.schema import Credential, RateLimitState, TripSyncCursor

# ----------------------------------------------------------------------
# Rate limit
# ----------------------------------------------------------------------


def get_backoff_until(session: Session, key: str) -> datetime | None:
    return session.scalar(select(RateLimitState.backoff_until).where(RateLimitState.key == key))


def extend_backoff(session: Session, key: str, until: datetime, *, now: datetime) -> bool:
    """Move ``backoff_until`` forward to *until*; never shortens it.

    Returns ``True`` when the stored deadline changed.
    """
    stmt = (
        update(RateLimitState)
        .where(
            RateLimitState.key == key,
            or_(RateLimitState.backoff_until.is_(None), RateLimitState.backoff_until < until),
        )
        .values(backoff_until=until, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount:
        return True
    if session.get(RateLimitState, key) is not None:
        return False
    try:
        with session.begin_nested():
            session.add(RateLimitState(key=key, backoff_until=until, updated_at=now))
    except IntegrityError:
        return bool(session.execute(stmt).rowcount)
    return True


def record_call(session: Session, key: str, *, now: datetime) -> None:
    stmt = (
        update(RateLimitState)
        .where(RateLimitState.key == key)
        .values(last_call_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if session.execute(stmt).rowcount:
        return
    try:
        with session.begin_nested():
            session.add(RateLimitState(key=key, last_call_at=now, updated_at=now))
    except IntegrityError:
        session.execute(stmt)


# ----------------------------------------------------------------------
# Trip sync cursors
# ----------------------------------------------------------------------


def get_cursor(session: Session, device_id: str) -> TripSyncCursor | None:
    return session.get(TripSyncCursor, device_id)


def start_cursor(session: Session, device_id: str, *, now: datetime) -> TripSyncCursor:
    cursor = session.get(TripSyncCursor, device_id)
    if cursor is None:
        cursor = TripSyncCursor(device_id=device_id, trips_synced=0)
        session.add(cursor)
    cursor.sync_status = "processing"
    cursor.error_message = None
    cursor.last_sync_at = now
    return cursor


def finish_cursor(
    session: Session,
    device_id: str,
    *,
    now: datetime,
    last_trip_end: datetime | None,
    written: int,
    error: str | None = None,
) -> TripSyncCursor:
    """Close a sync run.  The watermark only moves forward."""
    cursor = session.get(TripSyncCursor, device_id)
    if cursor is None:
        cursor = TripSyncCursor(device_id=device_id, trips_synced=0)
        session.add(cursor)
    if last_trip_end is not None and (cursor.last_trip_end is None or last_trip_end > cursor.last_trip_end):
        cursor.last_trip_end = last_trip_end
    cursor.trips_synced = (cursor.trips_synced or 0) + written
    cursor.last_sync_at = now
    cursor.sync_status = "error" if error else "completed"
    cursor.error_message = error
    return cursor


# ----------------------------------------------------------------------
# Credentials
# ----------------------------------------------------------------------


def latest_credential(session: Session) -> Credential | None:
    stmt = select(Credential).order_by(Credential.created_at.desc(), Credential.id.desc()).limit(1)
    return session.scalars(stmt).first()


def store_credential(
    session: Session,
    *,
    token: str,
    server_id: str,
    username: str | None,
    expires_at: datetime | None,
    now: datetime,
) -> Credential:
    credential = Credential(
        token=token,
        server_id=server_id,
        username=username,
        expires_at=expires_at,
        created_at=now,
    )
    session.add(credential)
    session.flush()
    return credential
