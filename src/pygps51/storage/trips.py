"""Trip table queries."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from pygps51.models.trip import TripRecord
from pygps51.storage.schema import Trip, TripReviewFlag


def find_by_key(session: Session, device_id: str, start_time: datetime, end_time: datetime | None) -> Trip | None:
    """Look a trip up by its natural key ``(device_id, start_time, end_time)``."""
    end_clause = Trip.end_time.is_(None) if end_time is None else Trip.end_time == end_time
    stmt = select(Trip).where(Trip.device_id == device_id, Trip.start_time == start_time, end_clause)
    return session.scalars(stmt).first()


def find_near_duplicates(
    session: Session,
    record: TripRecord,
    *,
    tolerance: timedelta = timedelta(seconds=1),
) -> list[Trip]:
    """Trips with the same start whose end is within *tolerance* but not equal."""
    if record.end_time is None:
        return []
    stmt = select(Trip).where(
        Trip.device_id == record.device_id,
        Trip.start_time == record.start_time,
        Trip.end_time.is_not(None),
        Trip.end_time != record.end_time,
        Trip.end_time >= record.end_time - tolerance,
        Trip.end_time <= record.end_time + tolerance,
    )
    return list(session.scalars(stmt))


def insert_trip(session: Session, record: TripRecord, *, now: datetime) -> Trip:
    trip = Trip(
        device_id=record.device_id,
        start_time=record.start_time,
        end_time=record.end_time,
        start_lat=record.start_lat,
        start_lon=record.start_lon,
        end_lat=record.end_lat,
        end_lon=record.end_lon,
        distance_km=record.distance_km,
        duration_seconds=record.duration_seconds,
        avg_speed_kmh=record.avg_speed_kmh,
        max_speed_kmh=record.max_speed_kmh,
        source=record.source,
        source_observed_at=record.source_observed_at,
        raw=record.raw or None,
        created_at=now,
        updated_at=now,
    )
    session.add(trip)
    session.flush()
    return trip


def replace_trip(trip: Trip, record: TripRecord, *, now: datetime) -> None:
    """Overwrite the mutable columns of *trip* with *record*.  Key columns never change."""
    trip.start_lat = record.start_lat
    trip.start_lon = record.start_lon
    trip.end_lat = record.end_lat
    trip.end_lon = record.end_lon
    trip.distance_km = record.distance_km
    trip.duration_seconds = record.duration_seconds
    trip.avg_speed_kmh = record.avg_speed_kmh
    trip.max_speed_kmh = record.max_speed_kmh
    trip.source = record.source
    trip.source_observed_at = record.source_observed_at
    trip.raw = record.raw or None
    trip.updated_at = now


def add_review_flag(session: Session, trip: Trip, other: Trip, *, reason: str, now: datetime) -> bool:
    """Record a near-duplicate pair once.  Returns ``False`` if already flagged."""
    low, high = sorted((trip.id, other.id))
    existing = session.scalars(
        select(TripReviewFlag).where(TripReviewFlag.trip_id == low, TripReviewFlag.conflicting_trip_id == high)
    ).first()
    if existing is not None:
        return False
    session.add(
        TripReviewFlag(
            device_id=trip.device_id,
            trip_id=low,
            conflicting_trip_id=high,
            reason=reason,
            created_at=now,
        )
    )
    return True


def trips_missing_coordinates(
    session: Session,
    *,
    start: datetime,
    end: datetime,
    device_id: str | None = None,
) -> list[Trip]:
    """Trips starting in ``[start, end]`` with a zero or NULL start or end coordinate."""
    coordinate_columns = (Trip.start_lat, Trip.start_lon, Trip.end_lat, Trip.end_lon)
    stmt = select(Trip).where(
        Trip.start_time >= start,
        Trip.start_time <= end,
        or_(*(or_(column.is_(None), column == 0) for column in coordinate_columns)),
    )
    if device_id is not None:
        stmt = stmt.where(Trip.device_id == device_id)
    return list(session.scalars(stmt.order_by(Trip.device_id, Trip.start_time)))


def trips_for_device(session: Session, device_id: str, *, start: datetime, end: datetime) -> list[Trip]:
    stmt = (
        select(Trip)
        .where(Trip.device_id == device_id, Trip.start_time >= start, Trip.start_time <= end)
        .order_by(Trip.start_time)
    )
    return list(session.scalars(stmt))
