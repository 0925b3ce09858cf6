"""Incremental trip synchronization from ``querytrips``."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pygps51._constants import METERS_PER_KM, TRIP_SOURCE_VENDOR
from pygps51.client import Gps51Client
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51AuthExpiredError, Gps51DataError, Gps51Error, Gps51StoreError
from pygps51.ingestion.normalize import valid_coordinates
from pygps51.models._base import parse_vendor_timestamp
from pygps51.models.trip import RawTrip, TripRecord
from pygps51.state.policy import should_replace
from pygps51.storage import coordination, devices, trips
from pygps51.storage.database import session_scope
from pygps51.storage.schema import Trip

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UpsertOutcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclasses.dataclass
class TripSyncResult:
    """Per-device counters of one sync run."""

    device_id: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    flagged: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)

    def count(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.skipped += 1


def _coordinate_pair(lat: float | None, lon: float | None) -> tuple[float | None, float | None]:
    if valid_coordinates(lat, lon):
        return lat, lon
    return None, None


def convert_trip(raw: RawTrip, *, device_id: str, observed_at: datetime, utc_offset_hours: float) -> TripRecord:
    """Map a vendor trip segment onto a :class:`TripRecord`.

    Distances arrive in metres and speeds in metres per hour.  An endpoint
    outside the valid coordinate range is stored as unknown.

    Raises
    ------
    Gps51DataError
        No parseable start time, or the trip ends before it starts.
    """
    start = parse_vendor_timestamp(raw.start_time, utc_offset_hours=utc_offset_hours)
    if start is None:
        raise Gps51DataError(f"Trip for {device_id} has no start time", record=raw.raw)
    end = parse_vendor_timestamp(raw.end_time, utc_offset_hours=utc_offset_hours)
    start_lat, start_lon = _coordinate_pair(raw.start_lat, raw.start_lon)
    end_lat, end_lon = _coordinate_pair(raw.end_lat, raw.end_lon)
    try:
        return TripRecord(
            device_id=device_id,
            start_time=start,
            end_time=end,
            start_lat=start_lat,
            start_lon=start_lon,
            end_lat=end_lat,
            end_lon=end_lon,
            distance_km=(raw.distance_m or 0.0) / METERS_PER_KM,
            avg_speed_kmh=raw.avg_speed_mph / METERS_PER_KM if raw.avg_speed_mph else None,
            max_speed_kmh=raw.max_speed_mph / METERS_PER_KM if raw.max_speed_mph else None,
            source=TRIP_SOURCE_VENDOR,
            source_observed_at=observed_at,
            raw=dict(raw.raw),
        )
    except ValidationError as exc:
        raise Gps51DataError(f"Invalid trip for {device_id}: {exc.errors()[0]['msg']}", record=raw.raw) from exc


def _update_or_skip(existing: Trip, record: TripRecord, *, now: datetime) -> UpsertOutcome:
    if should_replace(
        existing=existing,
        existing_observed_at=existing.source_observed_at,
        incoming=record,
        incoming_observed_at=record.source_observed_at,
    ):
        trips.replace_trip(existing, record, now=now)
        return UpsertOutcome.UPDATED
    return UpsertOutcome.SKIPPED


def _flag_near_duplicates(session: Session, trip: Trip, record: TripRecord, *, now: datetime) -> int:
    flagged = 0
    for other in trips.find_near_duplicates(session, record):
        if other.id == trip.id:
            continue
        if trips.add_review_flag(session, trip, other, reason="end_time within 1s of another trip", now=now):
            _logger.warning(
                "Near-duplicate trips for device=%s start=%s (ids %s, %s) flagged for review",
                record.device_id,
                record.start_time.isoformat(),
                trip.id,
                other.id,
            )
            flagged += 1
    return flagged


def upsert_trip(session: Session, record: TripRecord, *, now: datetime) -> tuple[UpsertOutcome, int]:
    """Insert, upgrade or skip *record*.  Returns ``(outcome, flags_added)``.

    Safe under concurrent writers: a unique-key violation on insert is
    re-handled as update-or-skip against the winning row.
    """
    devices.ensure_device(session, record.device_id, now=now)
    existing = trips.find_by_key(session, record.device_id, record.start_time, record.end_time)
    if existing is None:
        try:
            with session.begin_nested():
                trip = trips.insert_trip(session, record, now=now)
        except IntegrityError:
            existing = trips.find_by_key(session, record.device_id, record.start_time, record.end_time)
            if existing is None:
                raise
            outcome = _update_or_skip(existing, record, now=now)
            trip = existing
        else:
            outcome = UpsertOutcome.CREATED
    else:
        outcome = _update_or_skip(existing, record, now=now)
        trip = existing

    flagged = 0
    if outcome != UpsertOutcome.SKIPPED:
        session.flush()
        flagged = _flag_near_duplicates(session, trip, record, now=now)
    return outcome, flagged


def write_trips(
    session_factory: sessionmaker[Session],
    records: Iterable[TripRecord],
    result: TripSyncResult,
    *,
    now: datetime,
) -> datetime | None:
    """Upsert *records* in start-time order, one transaction each.

    Returns the latest end time of the contiguous prefix of trips that were
    written (or were already present), which is how far a cursor may move.
    """
    watermark: datetime | None = None
    prefix_intact = True
    for record in sorted(records, key=lambda r: r.start_time):
        try:
            with session_scope(session_factory) as session:
                outcome, flagged = upsert_trip(session, record, now=now)
        except OperationalError as exc:
            raise Gps51StoreError(f"Store unavailable while writing trips: {exc}") from exc
        except SQLAlchemyError as exc:
            _logger.warning(
                "Failed to write trip device=%s start=%s",
                record.device_id,
                record.start_time.isoformat(),
                exc_info=True,
            )
            result.errors.append(f"{record.start_time.isoformat()}: {exc.__class__.__name__}")
            prefix_intact = False
            continue

        result.count(outcome)
        result.flagged += flagged
        if not prefix_intact:
            continue
        if record.end_time is None:
            # In progress: do not move the cursor past it.
            prefix_intact = False
        elif watermark is None or record.end_time > watermark:
            watermark = record.end_time
    return watermark


class TripSynchronizer:
    """Pulls vendor trips per device and upserts them idempotently."""

    def __init__(
        self,
        client: Gps51Client,
        session_factory: sessionmaker[Session],
        config: Gps51Config,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._config = config
        self._clock = clock

    def _window_start(self, device_id: str, *, now: datetime, full: bool) -> datetime:
        default_start = now - self._config.trip_lookback
        with session_scope(self._session_factory) as session:
            devices.ensure_device(session, device_id, now=now)
            cursor = coordination.get_cursor(session, device_id)
            last_end = cursor.last_trip_end if cursor is not None else None
            coordination.start_cursor(session, device_id, now=now)
        if full or last_end is None:
            return default_start
        return max(last_end, default_start)

    def _finish(self, device_id: str, *, now: datetime, watermark: datetime | None, result: TripSyncResult) -> None:
        written = result.created + result.updated
        error = "; ".join(result.errors)[:1000] or None
        with session_scope(self._session_factory) as session:
            coordination.finish_cursor(
                session,
                device_id,
                now=now,
                last_trip_end=watermark,
                written=written,
                error=error,
            )

    async def sync_device(self, device_id: str, *, full: bool = False) -> TripSyncResult:
        """Fetch and upsert trips of one device since its cursor.

        ``full=True`` ignores the cursor and re-fetches the whole lookback
        window.

        Raises
        ------
        Gps51StoreError
            The store could not be reached.
        """
        try:
            return await self._sync_device(device_id, full=full)
        except OperationalError as exc:
            raise Gps51StoreError(f"Store unavailable during trip sync of {device_id}: {exc}") from exc

    async def _sync_device(self, device_id: str, *, full: bool) -> TripSyncResult:
        result = TripSyncResult(device_id=device_id)
        now = self._clock()
        begin = self._window_start(device_id, now=now, full=full)
        _logger.debug("Syncing trips device=%s from %s to %s", device_id, begin.isoformat(), now.isoformat())

        try:
            raw_trips = await self._client.query_trips(device_id, begin, now)
        except Gps51AuthExpiredError as exc:
            result.errors.append(str(exc))
            self._finish(device_id, now=now, watermark=None, result=result)
            raise
        except Gps51Error as exc:
            _logger.warning("Trip fetch failed for device=%s: %s", device_id, exc)
            result.errors.append(str(exc))
            self._finish(device_id, now=now, watermark=None, result=result)
            return result

        result.fetched = len(raw_trips)
        offset = self._config.normalizer.vendor_utc_offset_hours
        records: list[TripRecord] = []
        for raw in raw_trips:
            try:
                records.append(convert_trip(raw, device_id=device_id, observed_at=now, utc_offset_hours=offset))
            except Gps51DataError as exc:
                _logger.warning("Skipping malformed trip for device=%s: %s", device_id, exc)
                result.errors.append(str(exc))

        watermark = write_trips(self._session_factory, records, result, now=now)
        self._finish(device_id, now=now, watermark=watermark, result=result)
        _logger.info(
            "Trip sync device=%s fetched=%d created=%d updated=%d skipped=%d flagged=%d errors=%d",
            device_id,
            result.fetched,
            result.created,
            result.updated,
            result.skipped,
            result.flagged,
            len(result.errors),
        )
        return result

    async def sync_devices(self, device_ids: Iterable[str], *, full: bool = False) -> list[TripSyncResult]:
        """Sync several devices in turn; one device failing does not stop the others.

        An expired credential aborts the batch since every device would fail
        the same way.
        """
        results: list[TripSyncResult] = []
        for device_id in device_ids:
            try:
                results.append(await self.sync_device(device_id, full=full))
            except (Gps51AuthExpiredError, Gps51StoreError):
                raise
            except (Gps51Error, SQLAlchemyError) as exc:
                _logger.warning("Trip sync failed for device=%s", device_id, exc_info=True)
                results.append(TripSyncResult(device_id=device_id, errors=[str(exc)]))
        return results
