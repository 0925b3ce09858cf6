from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeClock
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pygps51.config import Gps51Config
from pygps51.ingestion.derive import (
    TrackPoint,
    TripDeriver,
    derive_trips,
    extract_ignition_trips,
    extract_motion_trips,
    haversine_km,
)
from pygps51.ingestion.normalize import normalize
from pygps51.storage import devices, positions
from pygps51.storage.database import session_scope
from pygps51.storage.schema import Trip

_T0 = datetime(2026, 3, 1, 6, 0, tzinfo=UTC)


def _point(minute: float, lat: float | None, speed: float = 0.0, ignition: bool = False) -> TrackPoint:
    return TrackPoint(
        timestamp=_T0 + timedelta(minutes=minute),
        latitude=lat,
        longitude=None if lat is None else 3.3,
        speed_kmh=speed,
        ignition_on=ignition,
    )


def test_haversine_one_degree_of_longitude_at_equator() -> None:
    assert haversine_km(0.0, 0.0, 0.0, 1.0) == pytest.approx(111.19, abs=0.01)
    assert haversine_km(6.5, 3.3, 6.5, 3.3) == 0.0


def test_ignition_segments_include_the_off_sample() -> None:
    points = [
        _point(0, 6.50, ignition=False),
        _point(1, 6.50, ignition=True),
        _point(2, 6.51, 40, ignition=True),
        _point(3, 6.52, ignition=False),
        _point(4, 6.52, ignition=False),
    ]

    segments = extract_ignition_trips(points)

    assert [[p.timestamp for p in segment] for segment in segments] == [[p.timestamp for p in points[1:4]]]


def test_ignition_trip_left_open_is_not_returned() -> None:
    points = [_point(0, 6.50, ignition=True), _point(1, 6.51, 30, ignition=True)]
    assert extract_ignition_trips(points) == []


def test_motion_segment_ends_after_dwell() -> None:
    points = [
        _point(0, 6.50),
        _point(1, 6.50, 10),
        _point(2, 6.51, 20),
        _point(3, 6.52),
        _point(4, 6.52),
        _point(8, 6.52),
    ]

    segments = extract_motion_trips(points)

    assert len(segments) == 1
    assert [p.timestamp for p in segments[0]] == [p.timestamp for p in points[1:4]]


def test_long_gap_closes_a_motion_trip() -> None:
    points = [_point(0, 6.50, 10), _point(1, 6.51, 20), _point(45, 6.60, 20), _point(46, 6.61, 20)]
    segments = extract_motion_trips(points)
    assert [len(segment) for segment in segments] == [2]


def test_derive_trips_summary() -> None:
    points = [
        _point(0, 6.50, ignition=False),
        _point(1, 6.50, ignition=True),
        _point(2, 6.51, 40, ignition=True),
        _point(3, 6.52, 0, ignition=False),
    ]

    (trip,) = derive_trips("D1", points, observed_at=_T0 + timedelta(hours=1))

    assert trip.source == "derived"
    assert trip.start_time == _T0 + timedelta(minutes=1)
    assert trip.end_time == _T0 + timedelta(minutes=3)
    assert trip.duration_seconds == 120
    assert trip.distance_km == pytest.approx(2.22, abs=0.01)
    assert trip.max_speed_kmh == 40
    assert (trip.start_lat, trip.end_lat) == (6.50, 6.52)


def test_short_trips_and_gps_jumps_are_ignored() -> None:
    idle = [_point(0, 6.5, ignition=True), _point(1, 6.5, ignition=True), _point(2, 6.5, ignition=False)]
    assert derive_trips("D1", idle, observed_at=_T0) == []

    jumpy = [
        _point(0, 6.50, ignition=True),
        _point(1, 7.50, 40, ignition=True),
        _point(2, 7.5001, ignition=False),
    ]
    assert derive_trips("D1", jumpy, observed_at=_T0) == []


def test_derive_device_upserts_idempotently(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    readings = [(0, 0, 6.50, 0), (1, 1, 6.50, 0), (2, 1, 6.51, 40), (3, 0, 6.52, 0)]
    with session_scope(session_factory) as session:
        devices.ensure_device(session, "D1", now=clock.now)
        for minute, status, lat, speed in readings:
            when = _T0 + timedelta(minutes=minute)
            raw = {
                "deviceid": "D1",
                "gpstime": int(when.timestamp() * 1000),
                "callat": lat,
                "callon": 3.3,
                "speed": speed,
                "status": status,
            }
            positions.append_history(session, normalize(raw, observed_at=when), recorded_at=when)

    deriver = TripDeriver(session_factory, Gps51Config(), clock=clock)
    first = deriver.derive_device("D1")
    second = deriver.derive_device("D1")

    assert (first.fetched, first.created) == (1, 1)
    assert (second.created, second.updated, second.skipped) == (0, 0, 1)
    with session_scope(session_factory) as session:
        trip = session.scalars(select(Trip)).one()
        assert trip.source == "derived"
        assert trip.duration_seconds == 120
