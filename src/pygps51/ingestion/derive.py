"""Local trip derivation from position history.

Used for devices whose vendor trip feed is empty or lagging.  Trips are
bounded by ignition transitions when the history carries ignition data and
by movement otherwise, and are written through the same upsert path as
vendor trips with ``source="derived"``.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session, sessionmaker

from pygps51._constants import TRIP_SOURCE_DERIVED
from pygps51.config import Gps51Config
from pygps51.ingestion.trips import TripSyncResult, write_trips
from pygps51.models.trip import TripRecord
from pygps51.storage import positions
from pygps51.storage.database import session_scope
from pygps51.storage.schema import PositionHistory

_logger = logging.getLogger(__name__)

_EARTH_RADIUS_KM = 6371.0
_MAX_JUMP_KM = 10.0
_MIN_TRIP_KM = 0.1
_MOVING_SPEED_KMH = 3.0
_STOP_DWELL = timedelta(minutes=5)
_MAX_GAP = timedelta(minutes=30)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


@dataclasses.dataclass(frozen=True)
class TrackPoint:
    timestamp: datetime
    latitude: float | None
    longitude: float | None
    speed_kmh: float
    ignition_on: bool

    @property
    def has_fix(self) -> bool:
        return self.latitude is not None and self.longitude is not None and not (
            self.latitude == 0 and self.longitude == 0
        )

    @classmethod
    def from_row(cls, row: PositionHistory) -> TrackPoint:
        return cls(
            timestamp=row.timestamp,
            latitude=row.latitude,
            longitude=row.longitude,
            speed_kmh=row.speed_kmh or 0.0,
            ignition_on=bool(row.ignition_on),
        )


def _summarize(device_id: str, points: Sequence[TrackPoint], *, observed_at: datetime) -> TripRecord | None:
    """Build a trip from consecutive *points*, or ``None`` if it is too short."""
    if len(points) < 2:
        return None

    distance = 0.0
    previous_fix: TrackPoint | None = None
    for point in points:
        if not point.has_fix:
            continue
        if previous_fix is not None:
            assert previous_fix.latitude is not None and previous_fix.longitude is not None  # noqa: S101
            assert point.latitude is not None and point.longitude is not None  # noqa: S101
            hop = haversine_km(previous_fix.latitude, previous_fix.longitude, point.latitude, point.longitude)
            # A jump this large between two samples is a bad fix, not travel.
            if hop <= _MAX_JUMP_KM:
                distance += hop
        previous_fix = point

    if distance < _MIN_TRIP_KM:
        return None

    fixes = [point for point in points if point.has_fix]
    start, end = points[0], points[-1]
    duration_h = (end.timestamp - start.timestamp).total_seconds() / 3600
    return TripRecord(
        device_id=device_id,
        start_time=start.timestamp,
        end_time=end.timestamp,
        start_lat=fixes[0].latitude if fixes else None,
        start_lon=fixes[0].longitude if fixes else None,
        end_lat=fixes[-1].latitude if fixes else None,
        end_lon=fixes[-1].longitude if fixes else None,
        distance_km=round(distance, 3),
        avg_speed_kmh=round(distance / duration_h, 1) if duration_h > 0 else None,
        max_speed_kmh=max(point.speed_kmh for point in points),
        source=TRIP_SOURCE_DERIVED,
        source_observed_at=observed_at,
    )


def extract_ignition_trips(points: Sequence[TrackPoint]) -> list[list[TrackPoint]]:
    """Split on ignition: a trip runs from an ignition-on sample to the next ignition-off sample, inclusive.

    A gap longer than 30 minutes closes the trip at the last sample before it.
    A trip still open at the end of *points* is not returned.
    """
    segments: list[list[TrackPoint]] = []
    current: list[TrackPoint] | None = None
    for point in points:
        if current is not None and point.timestamp - current[-1].timestamp > _MAX_GAP:
            segments.append(current)
            current = None
        if current is None:
            if point.ignition_on:
                current = [point]
            continue
        current.append(point)
        if not point.ignition_on:
            segments.append(current)
            current = None
    return segments


def extract_motion_trips(points: Sequence[TrackPoint]) -> list[list[TrackPoint]]:
    """Split on movement, for devices without usable ignition data.

    A trip starts at the first sample above 3 km/h and ends at the first
    stationary sample once the device has stayed stationary for 5 minutes.
    """
    segments: list[list[TrackPoint]] = []
    current: list[TrackPoint] | None = None
    stop_index: int | None = None
    for point in points:
        if current is not None and point.timestamp - current[-1].timestamp > _MAX_GAP:
            segments.append(current[: stop_index + 1] if stop_index is not None else current)
            current, stop_index = None, None
        moving = point.speed_kmh > _MOVING_SPEED_KMH
        if current is None:
            if moving:
                current = [point]
            continue
        current.append(point)
        if moving:
            stop_index = None
            continue
        if stop_index is None:
            stop_index = len(current) - 1
        elif point.timestamp - current[stop_index].timestamp >= _STOP_DWELL:
            segments.append(current[: stop_index + 1])
            current, stop_index = None, None
    return segments


def derive_trips(device_id: str, points: Sequence[TrackPoint], *, observed_at: datetime) -> list[TripRecord]:
    """Derive completed trips from time-ordered *points*."""
    if any(point.ignition_on for point in points):
        segments = extract_ignition_trips(points)
    else:
        segments = extract_motion_trips(points)
    derived: list[TripRecord] = []
    for segment in segments:
        record = _summarize(device_id, segment, observed_at=observed_at)
        if record is not None:
            derived.append(record)
    return derived


class TripDeriver:
    """Derives trips from stored position history and upserts them."""

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

    def derive_device(
        self,
        device_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> TripSyncResult:
        """Derive and upsert trips for one device in ``[since, until]``.

        Defaults to the configured lookback window ending now.
        """
        now = self._clock()
        until = until or now
        since = since or until - self._config.trip_lookback
        with session_scope(self._session_factory) as session:
            rows = positions.history_between(session, device_id, since, until)
            points = [TrackPoint.from_row(row) for row in rows]

        records = derive_trips(device_id, points, observed_at=now)
        result = TripSyncResult(device_id=device_id, fetched=len(records))
        write_trips(self._session_factory, records, result, now=now)
        _logger.info(
            "Derived trips device=%s samples=%d trips=%d created=%d updated=%d skipped=%d",
            device_id,
            len(points),
            len(records),
            result.created,
            result.updated,
            result.skipped,
        )
        return result
