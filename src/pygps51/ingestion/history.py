"""Track history backfill: ``querytrack`` → position history."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pygps51.client import Gps51Client
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51AuthExpiredError, Gps51ConfigError, Gps51DataError, Gps51Error, Gps51StoreError
from pygps51.ingestion.normalize import normalize
from pygps51.models._base import ensure_utc
from pygps51.models.state import TimestampSource
from pygps51.storage import devices, positions
from pygps51.storage.database import session_scope

_logger = logging.getLogger(__name__)

#: Longest window one backfill may cover.
MAX_HISTORY_RANGE = timedelta(days=30)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclasses.dataclass
class HistoryBackfillResult:
    device_id: str
    fetched: int = 0
    inserted: int = 0
    skipped: int = 0
    trips_derived: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)


class HistoryBackfiller:
    """Fills position history of a device from its recorded track.

    Track points are normalized like live readings but only appended to
    history; the current position and events are left alone.  Points
    without a fix or a timestamp of their own are skipped, as are points
    already stored, so a backfill can be re-run over the same window.

    The window is fetched in chunks of *chunk*, each written in one
    transaction.
    """

    def __init__(
        self,
        client: Gps51Client,
        session_factory: sessionmaker[Session],
        config: Gps51Config,
        *,
        clock: Callable[[], datetime] = _utcnow,
        chunk: timedelta = timedelta(days=1),
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._config = config
        self._clock = clock
        self._chunk = chunk

    def window(self, start: datetime | None = None, end: datetime | None = None) -> tuple[datetime, datetime]:
        """Resolve ``(start, end)``; defaults to the configured lookback ending now.

        Raises
        ------
        Gps51ConfigError
            The window is empty or longer than :data:`MAX_HISTORY_RANGE`.
        """
        end = ensure_utc(end) if end is not None else self._clock()
        start = ensure_utc(start) if start is not None else end - self._config.history_lookback
        if start >= end:
            raise Gps51ConfigError(f"History window start {start.isoformat()} is not before {end.isoformat()}")
        if end - start > MAX_HISTORY_RANGE:
            raise Gps51ConfigError(f"History window exceeds {MAX_HISTORY_RANGE.days} days")
        return start, end

    def _store_points(self, device_id: str, points: list[Mapping[str, Any]], result: HistoryBackfillResult) -> None:
        now = self._clock()
        inserted = skipped = 0
        bad: list[str] = []
        previous_ignition: bool | None = None
        with session_scope(self._session_factory) as session:
            devices.ensure_device(session, device_id, now=now)
            for point in points:
                try:
                    state = normalize(
                        {**point, "deviceid": device_id},
                        observed_at=now,
                        previous_ignition=previous_ignition,
                        config=self._config.normalizer,
                    )
                except Gps51DataError as exc:
                    bad.append(str(exc))
                    continue
                previous_ignition = state.ignition_on
                if state.latitude is None or state.timestamp_source == TimestampSource.OBSERVED:
                    skipped += 1
                elif positions.append_history(session, state, recorded_at=now):
                    inserted += 1
                else:
                    skipped += 1
        result.inserted += inserted
        result.skipped += skipped
        result.errors.extend(bad)

    async def backfill_device(
        self,
        device_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> HistoryBackfillResult:
        """Fetch and store the track of one device between *start* and *end*.

        A failed chunk is recorded in the result and the next chunk is
        still fetched.

        Raises
        ------
        Gps51AuthExpiredError
            The credential expired; nothing further can be fetched.
        Gps51StoreError
            The store could not be reached.
        """
        start, end = self.window(start, end)
        result = HistoryBackfillResult(device_id=device_id)
        cursor = start
        while cursor < end:
            chunk_end = min(cursor + self._chunk, end)
            try:
                points = await self._client.query_tracks(device_id, cursor, chunk_end)
            except Gps51AuthExpiredError:
                raise
            except Gps51Error as exc:
                _logger.warning("Track fetch failed for device=%s at %s: %s", device_id, cursor.isoformat(), exc)
                result.errors.append(str(exc))
                cursor = chunk_end
                continue

            result.fetched += len(points)
            try:
                self._store_points(device_id, points, result)
            except OperationalError as exc:
                raise Gps51StoreError(f"Store unavailable during history backfill of {device_id}: {exc}") from exc
            except SQLAlchemyError as exc:
                _logger.warning("Storing track chunk failed for device=%s", device_id, exc_info=True)
                result.errors.append(str(exc))
            cursor = chunk_end

        _logger.info(
            "History backfill device=%s fetched=%d inserted=%d skipped=%d errors=%d",
            device_id,
            result.fetched,
            result.inserted,
            result.skipped,
            len(result.errors),
        )
        return result

    async def backfill_devices(
        self,
        device_ids: Iterable[str],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[HistoryBackfillResult]:
        """Backfill several devices in turn; one device failing does not stop the others."""
        results: list[HistoryBackfillResult] = []
        for device_id in device_ids:
            try:
                results.append(await self.backfill_device(device_id, start, end))
            except (Gps51AuthExpiredError, Gps51StoreError, Gps51ConfigError):
                raise
            except Gps51Error as exc:
                _logger.warning("History backfill failed for device=%s", device_id, exc_info=True)
                results.append(HistoryBackfillResult(device_id=device_id, errors=[str(exc)]))
        return results
