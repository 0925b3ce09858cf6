"""Current position and position history queries.

History is append-only and unique on ``(device_id, timestamp)``; the
current row only ever moves forward in time.  Every history query takes an
explicit time window.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pygps51.models.state import CanonicalState
from pygps51.storage.schema import CurrentPosition, PositionHistory


def _current_values(state: CanonicalState, observed_at: datetime) -> dict[str, object]:
    return {
        "timestamp": state.timestamp,
        "timestamp_source": str(state.timestamp_source),
        "latitude": state.latitude,
        "longitude": state.longitude,
        "speed_kmh": state.speed_kmh,
        "speed_unit_corrected": state.speed_unit_corrected,
        "heading": state.heading,
        "altitude": state.altitude,
        "battery_percent": state.battery_percent,
        "signal_strength": state.signal_strength,
        "ignition_on": state.ignition_on,
        "ignition_confidence": state.ignition_confidence,
        "ignition_method": str(state.ignition_method),
        "is_online": state.is_online,
        "is_moving": state.is_moving,
        "is_overspeeding": state.is_overspeeding,
        "data_quality": str(state.data_quality),
        "status_text": state.status_text,
        "total_mileage_m": state.total_mileage_m,
        "observed_at": observed_at,
        "updated_at": observed_at,
    }


def get_current(session: Session, device_id: str) -> CurrentPosition | None:
    return session.get(CurrentPosition, device_id)


def upsert_current(session: Session, state: CanonicalState, *, observed_at: datetime) -> bool:
    """Advance the device's current row to *state*.

    Returns ``False`` when the stored row is at least as recent, in which
    case nothing is written.
    """
    values = _current_values(state, observed_at)
    result = session.execute(
        update(CurrentPosition)
        .where(CurrentPosition.device_id == state.device_id, CurrentPosition.timestamp < state.timestamp)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        session.expire_all()
        return True
    if session.get(CurrentPosition, state.device_id) is not None:
        return False
    try:
        with session.begin_nested():
            session.add(CurrentPosition(device_id=state.device_id, **values))
    except IntegrityError:
        # Lost an insert race; retry as a forward-only update.
        result = session.execute(
            update(CurrentPosition)
            .where(CurrentPosition.device_id == state.device_id, CurrentPosition.timestamp < state.timestamp)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)
    return True


def mark_offline(session: Session, device_id: str, *, now: datetime) -> bool:
    """Flip an online current row to offline.  Returns ``True`` when it changed."""
    result = session.execute(
        update(CurrentPosition)
        .where(CurrentPosition.device_id == device_id, CurrentPosition.is_online.is_(True))
        .values(is_online=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def stale_online_devices(session: Session, *, older_than: datetime) -> list[CurrentPosition]:
    """Current rows still flagged online whose reading predates *older_than*."""
    stmt = (
        select(CurrentPosition)
        .where(CurrentPosition.is_online.is_(True), CurrentPosition.timestamp < older_than)
        .order_by(CurrentPosition.device_id)
    )
    return list(session.scalars(stmt))


def append_history(session: Session, state: CanonicalState, *, recorded_at: datetime) -> bool:
    """Insert a history row.  Returns ``False`` for a duplicate ``(device, timestamp)``."""
    row = PositionHistory(
        device_id=state.device_id,
        timestamp=state.timestamp,
        latitude=state.latitude,
        longitude=state.longitude,
        speed_kmh=state.speed_kmh,
        heading=state.heading,
        battery_percent=state.battery_percent,
        ignition_on=state.ignition_on,
        ignition_confidence=state.ignition_confidence,
        ignition_method=str(state.ignition_method),
        recorded_at=recorded_at,
    )
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        return False
    return True


def history_between(
    session: Session,
    device_id: str,
    start: datetime,
    end: datetime,
    *,
    limit: int | None = None,
) -> list[PositionHistory]:
    """History rows for *device_id* with ``start <= timestamp <= end``, oldest first."""
    stmt = (
        select(PositionHistory)
        .where(
            PositionHistory.device_id == device_id,
            PositionHistory.timestamp >= start,
            PositionHistory.timestamp <= end,
        )
        .order_by(PositionHistory.timestamp)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt))


def _valid_fix_clause() -> tuple[object, ...]:
    # A zero on either axis is unknown here, matching trips_missing_coordinates;
    # a half-zero fix would otherwise be written back and picked up again.
    return (
        PositionHistory.latitude.is_not(None),
        PositionHistory.longitude.is_not(None),
        PositionHistory.latitude != 0,
        PositionHistory.longitude != 0,
    )


def earliest_fix_between(session: Session, device_id: str, start: datetime, end: datetime) -> PositionHistory | None:
    stmt = (
        select(PositionHistory)
        .where(
            PositionHistory.device_id == device_id,
            PositionHistory.timestamp >= start,
            PositionHistory.timestamp <= end,
            *_valid_fix_clause(),
        )
        .order_by(PositionHistory.timestamp.asc())
        .limit(1)
    )
    return session.scalars(stmt).first()


def latest_fix_between(session: Session, device_id: str, start: datetime, end: datetime) -> PositionHistory | None:
    stmt = (
        select(PositionHistory)
        .where(
            PositionHistory.device_id == device_id,
            PositionHistory.timestamp >= start,
            PositionHistory.timestamp <= end,
            *_valid_fix_clause(),
        )
        .order_by(PositionHistory.timestamp.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()
