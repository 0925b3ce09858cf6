from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta
from typing import Any

from conftest import FakeClock
from sqlalchemy.orm import Session, sessionmaker

from pygps51.config import Gps51Config
from pygps51.ingestion.normalize import normalize
from pygps51.state.events import EventCandidate, EventDetector, EventRecorder, EventType, Severity, VehicleStatus
from pygps51.storage import devices, positions
from pygps51.storage import events as event_store
from pygps51.storage.database import session_scope

_T0 = datetime(2026, 3, 1, 7, 0, tzinfo=UTC)


@dataclasses.dataclass
class _Reading:
    timestamp: datetime
    ignition_on: bool = False
    speed_kmh: float = 0.0
    ignition_confidence: float = 1.0
    is_online: bool = True
    battery_percent: int | None = None
    latitude: float | None = 6.5
    longitude: float | None = 3.3
    device_id: str = "D1"


def _at(minutes: float, **fields: Any) -> _Reading:
    return _Reading(timestamp=_T0 + timedelta(minutes=minutes), **fields)


def _types(candidates: list[EventCandidate]) -> list[EventType]:
    return [c.event_type for c in candidates]


# ----------------------------------------------------------------------
# Detector
# ----------------------------------------------------------------------


def test_status_of() -> None:
    detector = EventDetector()
    assert detector.status_of(None) == VehicleStatus.UNKNOWN
    assert detector.status_of(_at(0, is_online=False, ignition_on=True)) == VehicleStatus.OFFLINE
    assert detector.status_of(_at(0)) == VehicleStatus.IGNITION_OFF
    assert detector.status_of(_at(0, ignition_on=True)) == VehicleStatus.IGNITION_ON
    assert detector.status_of(_at(0, ignition_on=True, speed_kmh=12)) == VehicleStatus.MOVING


def test_ignition_and_moving_transitions() -> None:
    detector = EventDetector()
    off, on_idle, off_again = _at(0), _at(1, ignition_on=True), _at(3)
    on_moving = _at(2, ignition_on=True, speed_kmh=40)

    assert _types(detector.evaluate(off, on_idle)) == [EventType.IGNITION_ON]
    assert _types(detector.evaluate(on_idle, on_moving)) == [EventType.MOVING]
    assert _types(detector.evaluate(on_moving, _at(2.5, ignition_on=True, speed_kmh=50))) == []
    assert _types(detector.evaluate(on_moving, off_again)) == [EventType.IGNITION_OFF]


def test_moving_from_off_reports_both() -> None:
    detector = EventDetector()
    found = detector.evaluate(_at(0), _at(1, ignition_on=True, speed_kmh=30))
    assert _types(found) == [EventType.IGNITION_ON, EventType.MOVING]
    assert found[1].metadata["speed"] == 30
    assert found[1].event_time == _T0 + timedelta(minutes=1)


def test_low_confidence_flip_is_ignored() -> None:
    detector = EventDetector()
    assert detector.evaluate(_at(0), _at(1, ignition_on=True, ignition_confidence=0.0)) == []


def test_first_reading_only_allows_overspeed() -> None:
    detector = EventDetector()
    assert detector.evaluate(None, _at(0, ignition_on=True, speed_kmh=40, battery_percent=5)) == []

    (event,) = detector.evaluate(None, _at(0, ignition_on=True, speed_kmh=130))
    assert event.event_type == EventType.OVERSPEED
    assert event.severity == Severity.CRITICAL


def test_overspeed_severity() -> None:
    detector = EventDetector()
    previous = _at(0, ignition_on=True, speed_kmh=90)
    (event,) = detector.evaluate(previous, _at(1, ignition_on=True, speed_kmh=110))
    assert event.severity == Severity.ERROR
    assert event.metadata["threshold"] == 100.0


def test_online_offline_transitions() -> None:
    detector = EventDetector()
    assert _types(detector.evaluate(_at(0), _at(1, is_online=False, ignition_on=True))) == [EventType.OFFLINE]
    assert _types(detector.evaluate(_at(0, is_online=False), _at(1))) == [EventType.ONLINE]


def test_battery_events_fire_on_downward_crossing() -> None:
    detector = EventDetector()
    assert _types(detector.evaluate(_at(0, battery_percent=25), _at(1, battery_percent=15))) == [
        EventType.LOW_BATTERY
    ]
    assert detector.evaluate(_at(0, battery_percent=15), _at(1, battery_percent=12)) == []
    assert _types(detector.evaluate(_at(0, battery_percent=12), _at(1, battery_percent=8))) == [
        EventType.CRITICAL_BATTERY
    ]
    assert _types(detector.evaluate(_at(0, battery_percent=25), _at(1, battery_percent=5))) == [
        EventType.CRITICAL_BATTERY
    ]
    assert detector.evaluate(_at(0, battery_percent=5), _at(1, battery_percent=30)) == []


# ----------------------------------------------------------------------
# Recorder
# ----------------------------------------------------------------------


def _replay(
    session_factory: sessionmaker[Session], clock: FakeClock, readings: list[_Reading]
) -> list[EventType]:
    config = Gps51Config()
    detector = EventDetector(config.events)
    recorder = EventRecorder(session_factory, config, clock=clock)
    with session_scope(session_factory) as session:
        devices.ensure_device(session, "D1", now=clock.now)

    recorded: list[EventType] = []
    for previous, current in zip(readings, readings[1:], strict=False):
        recorded.extend(_types(recorder.record(detector.evaluate(previous, current))))
    return recorded


def test_cooldown_suppresses_repeat_within_window(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    readings = [_at(0), _at(1, ignition_on=True), _at(2), _at(3, ignition_on=True)]

    recorded = _replay(session_factory, clock, readings)

    assert recorded.count(EventType.IGNITION_ON) == 1
    assert recorded.count(EventType.IGNITION_OFF) == 1


def test_cooldown_allows_repeat_after_window(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    readings = [_at(0), _at(1, ignition_on=True), _at(10), _at(21, ignition_on=True)]

    recorded = _replay(session_factory, clock, readings)

    assert recorded.count(EventType.IGNITION_ON) == 2


def test_cooldown_looks_both_ways_for_late_readings(
    clock: FakeClock, session_factory: sessionmaker[Session]
) -> None:
    detector = EventDetector()
    recorder = EventRecorder(session_factory, Gps51Config(), clock=clock)
    with session_scope(session_factory) as session:
        devices.ensure_device(session, "D1", now=clock.now)

    assert recorder.record(detector.evaluate(_at(19), _at(20, ignition_on=True)))
    assert recorder.record(detector.evaluate(_at(14), _at(15, ignition_on=True))) == []
    assert recorder.record(detector.evaluate(_at(0), _at(1, ignition_on=True)))

    with session_scope(session_factory) as session:
        stored = event_store.events_for_device(session, "D1")
    assert [e.event_time for e in stored] == [_T0 + timedelta(minutes=1), _T0 + timedelta(minutes=20)]
    assert stored[0].metadata_json == {"detected_by": "pygps51", "confidence": 1.0}


def test_detect_stale_devices(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    reading_time = clock.now - timedelta(minutes=30)
    with session_scope(session_factory) as session:
        devices.ensure_device(session, "D1", now=clock.now)
        state = normalize(
            {"deviceid": "D1", "gpstime": int(reading_time.timestamp() * 1000), "callat": 6.5, "callon": 3.3},
            observed_at=reading_time,
        )
        positions.upsert_current(session, state, observed_at=reading_time)

    recorder = EventRecorder(session_factory, Gps51Config(), clock=clock)

    assert recorder.detect_stale_devices() == ["D1"]
    assert recorder.detect_stale_devices() == []
    with session_scope(session_factory) as session:
        assert positions.get_current(session, "D1").is_online is False  # type: ignore[union-attr]
        (event,) = event_store.events_for_device(session, "D1")
        assert event.event_type == "offline"
        assert event.event_time == clock.now
        assert (event.latitude, event.longitude) == (6.5, 3.3)


def test_notification_flag_is_set_once(clock: FakeClock, session_factory: sessionmaker[Session]) -> None:
    _replay(session_factory, clock, [_at(0), _at(1, ignition_on=True)])

    with session_scope(session_factory) as session:
        (pending,) = event_store.pending_notifications(session)
        assert event_store.mark_notified(session, pending.id, at=clock.now)
        assert not event_store.mark_notified(session, pending.id, at=clock.now + timedelta(minutes=1))
    with session_scope(session_factory) as session:
        assert event_store.pending_notifications(session) == []
