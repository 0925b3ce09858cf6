"""Domain events derived from consecutive canonical readings.

:class:`EventDetector` is a pure per-device state machine comparing the
stored reading with the incoming one.  :class:`EventRecorder` persists the
resulting candidates, suppressing repeats inside each event type's cooldown.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session, sessionmaker

from pygps51.config import EventSettings, Gps51Config
from pygps51.models._base import ensure_utc
from pygps51.storage import events as event_store
from pygps51.storage import positions
from pygps51.storage.database import session_scope

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EventType(StrEnum):
    IGNITION_ON = "ignition_on"
    IGNITION_OFF = "ignition_off"
    MOVING = "moving"
    OVERSPEED = "overspeed"
    ONLINE = "online"
    OFFLINE = "offline"
    LOW_BATTERY = "low_battery"
    CRITICAL_BATTERY = "critical_battery"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class VehicleStatus(StrEnum):
    """Coarse per-device state the detector reasons about."""

    UNKNOWN = "unknown"
    IGNITION_OFF = "ignition_off"
    IGNITION_ON = "ignition_on"
    MOVING = "moving"
    OFFLINE = "offline"


class ReadingLike(Protocol):
    """What the detector needs from a reading: a canonical state or a stored current row."""

    device_id: str
    timestamp: datetime
    ignition_on: bool
    ignition_confidence: float
    speed_kmh: float
    is_online: bool
    battery_percent: int | None
    latitude: float | None
    longitude: float | None


class EventCandidate(BaseModel):
    """An event the detector proposes; the recorder may still suppress it."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    event_type: EventType
    severity: Severity
    event_time: datetime
    title: str
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    latitude: float | None = None
    longitude: float | None = None

    @field_validator("event_time")
    @classmethod
    def _ensure_tz_aware(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class EventDetector:
    """Compares two readings of the same device and proposes events."""

    def __init__(self, settings: EventSettings | None = None) -> None:
        self._settings = settings or EventSettings()

    def status_of(self, reading: ReadingLike | None) -> VehicleStatus:
        if reading is None:
            return VehicleStatus.UNKNOWN
        if not reading.is_online:
            return VehicleStatus.OFFLINE
        if not reading.ignition_on:
            return VehicleStatus.IGNITION_OFF
        if reading.speed_kmh > self._settings.moving_speed_threshold_kmh:
            return VehicleStatus.MOVING
        return VehicleStatus.IGNITION_ON

    def _candidate(
        self,
        current: ReadingLike,
        event_type: EventType,
        severity: Severity,
        title: str,
        message: str,
        **metadata: Any,
    ) -> EventCandidate:
        return EventCandidate(
            device_id=current.device_id,
            event_type=event_type,
            severity=severity,
            event_time=current.timestamp,
            title=title,
            message=message,
            metadata={"detected_by": "pygps51", **metadata},
            latitude=current.latitude,
            longitude=current.longitude,
        )

    def evaluate(self, previous: ReadingLike | None, current: ReadingLike) -> list[EventCandidate]:
        """Events implied by moving from *previous* to *current*.

        With no previous reading nothing can have flipped, so only
        level-triggered events (overspeed) are considered.
        """
        s = self._settings
        found: list[EventCandidate] = []
        speed = current.speed_kmh

        if previous is not None and previous.is_online != current.is_online:
            if current.is_online:
                found.append(
                    self._candidate(current, EventType.ONLINE, Severity.INFO, "Device online", "Reporting again")
                )
            else:
                found.append(
                    self._candidate(
                        current,
                        EventType.OFFLINE,
                        Severity.WARNING,
                        "Device offline",
                        "No fresh data from device",
                    )
                )

        if not current.is_online:
            return found

        if (
            previous is not None
            and previous.ignition_on != current.ignition_on
            and current.ignition_confidence >= s.min_ignition_confidence
        ):
            if current.ignition_on:
                found.append(
                    self._candidate(
                        current,
                        EventType.IGNITION_ON,
                        Severity.INFO,
                        "Ignition on",
                        "Vehicle ignition switched on",
                        confidence=current.ignition_confidence,
                    )
                )
            else:
                found.append(
                    self._candidate(
                        current,
                        EventType.IGNITION_OFF,
                        Severity.INFO,
                        "Ignition off",
                        "Vehicle ignition switched off",
                        confidence=current.ignition_confidence,
                    )
                )

        moving_now = current.ignition_on and speed > s.moving_speed_threshold_kmh
        if moving_now and previous is not None and self.status_of(previous) != VehicleStatus.MOVING:
            found.append(
                self._candidate(
                    current,
                    EventType.MOVING,
                    Severity.INFO,
                    "Vehicle moving",
                    f"Vehicle started moving at {speed:.0f} km/h",
                    speed=speed,
                )
            )

        if moving_now and speed > s.overspeed_threshold_kmh:
            severity = Severity.CRITICAL if speed > s.overspeed_critical_kmh else Severity.ERROR
            found.append(
                self._candidate(
                    current,
                    EventType.OVERSPEED,
                    severity,
                    "Overspeed",
                    f"Vehicle traveling at {speed:.0f} km/h",
                    speed=speed,
                    threshold=s.overspeed_threshold_kmh,
                )
            )

        battery = current.battery_percent
        previous_battery = previous.battery_percent if previous is not None else None
        if battery is not None and previous_battery is not None:
            if battery < s.critical_battery_percent <= previous_battery:
                found.append(
                    self._candidate(
                        current,
                        EventType.CRITICAL_BATTERY,
                        Severity.CRITICAL,
                        "Critical battery level",
                        f"Battery at {battery}%",
                        battery=battery,
                    )
                )
            elif battery < s.low_battery_percent <= previous_battery:
                found.append(
                    self._candidate(
                        current,
                        EventType.LOW_BATTERY,
                        Severity.WARNING,
                        "Low battery",
                        f"Battery at {battery}%",
                        battery=battery,
                    )
                )

        return found


class EventRecorder:
    """Persists event candidates with per-type cooldowns.

    Cooldowns are measured on event timestamps, not wall-clock time, so
    replayed or late readings are deduplicated the same way as live ones.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: Gps51Config,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._config = config
        self._clock = clock

    def _record_in(self, session: Session, candidates: Iterable[EventCandidate]) -> list[EventCandidate]:
        recorded: list[EventCandidate] = []
        now = self._clock()
        for candidate in candidates:
            key = event_store.cooldown_key(candidate.device_id, candidate.event_type)
            cooldown = self._config.events.cooldown_for(candidate.event_type)
            nearest = event_store.nearest_event_time(session, key, around=candidate.event_time)
            if nearest is not None and abs(candidate.event_time - nearest) < cooldown:
                _logger.debug(
                    "Suppressed %s for device=%s (last at %s, cooldown %s)",
                    candidate.event_type,
                    candidate.device_id,
                    nearest.isoformat(),
                    cooldown,
                )
                continue
            event_store.insert_event(
                session,
                device_id=candidate.device_id,
                event_type=str(candidate.event_type),
                severity=str(candidate.severity),
                event_time=candidate.event_time,
                title=candidate.title,
                message=candidate.message,
                metadata=candidate.metadata or None,
                latitude=candidate.latitude,
                longitude=candidate.longitude,
                created_at=now,
            )
            recorded.append(candidate)
        return recorded

    def record(self, candidates: Iterable[EventCandidate], *, session: Session | None = None) -> list[EventCandidate]:
        """Insert candidates not inside their cooldown; returns those written.

        Pass *session* to write inside the caller's transaction.
        """
        if session is not None:
            return self._record_in(session, candidates)
        with session_scope(self._session_factory) as own_session:
            return self._record_in(own_session, candidates)

    def detect_stale_devices(self, now: datetime | None = None) -> list[str]:
        """Flip devices with no reading inside the offline threshold to offline.

        Emits an ``offline`` event per device that actually changed.
        Returns the affected device ids.
        """
        now = ensure_utc(now or self._clock())
        cutoff = now - self._config.normalizer.offline_threshold
        with session_scope(self._session_factory) as session:
            stale = [
                (row.device_id, row.latitude, row.longitude)
                for row in positions.stale_online_devices(session, older_than=cutoff)
            ]

        flipped: list[str] = []
        for device_id, lat, lon in stale:
            with session_scope(self._session_factory) as session:
                if not positions.mark_offline(session, device_id, now=now):
                    continue
                self._record_in(
                    session,
                    [
                        EventCandidate(
                            device_id=device_id,
                            event_type=EventType.OFFLINE,
                            severity=Severity.WARNING,
                            event_time=now,
                            title="Device offline",
                            message=f"No data for more than {self._config.normalizer.offline_threshold}",
                            metadata={"detected_by": "offline_check"},
                            latitude=lat,
                            longitude=lon,
                        )
                    ],
                )
            flipped.append(device_id)
        if flipped:
            _logger.info("Marked %d device(s) offline", len(flipped))
        return flipped
