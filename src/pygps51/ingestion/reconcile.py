"""Backfill missing trip coordinates from position history."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51StoreError
from pygps51.storage import positions, trips
from pygps51.storage.database import session_scope
from pygps51.storage.schema import Trip

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _unknown(value: float | None) -> bool:
    """Zero on either axis counts as missing, as in the history fix lookup."""
    return value is None or value == 0


@dataclasses.dataclass
class ReconcileResult:
    trips_checked: int = 0
    trips_fixed: int = 0
    unresolved: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)


class CoordinateReconciler:
    """Fills zero/NULL trip endpoints with the nearest valid history fix.

    Start coordinates come from the earliest valid reading within
    ``backfill_window`` of the trip start, end coordinates from the latest
    valid reading within the window around the trip end.  A fixed trip no
    longer matches the selection, so re-running is a no-op.
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

    def _fix_trip(self, session: Session, trip: Trip) -> tuple[bool, bool]:
        """Returns ``(changed, fully_resolved)``."""
        window = self._config.backfill_window
        changed = False
        resolved = True

        if _unknown(trip.start_lat) or _unknown(trip.start_lon):
            fix = positions.earliest_fix_between(
                session,
                trip.device_id,
                trip.start_time - window,
                trip.start_time + window,
            )
            if fix is not None:
                trip.start_lat, trip.start_lon = fix.latitude, fix.longitude
                changed = True
            else:
                resolved = False

        if _unknown(trip.end_lat) or _unknown(trip.end_lon):
            if trip.end_time is None:
                resolved = False
            else:
                fix = positions.latest_fix_between(
                    session,
                    trip.device_id,
                    trip.end_time - window,
                    trip.end_time + window,
                )
                if fix is not None:
                    trip.end_lat, trip.end_lon = fix.latitude, fix.longitude
                    changed = True
                else:
                    resolved = False

        if changed:
            trip.updated_at = self._clock()
        return changed, resolved

    def reconcile(
        self,
        device_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ReconcileResult:
        """Backfill coordinates of trips starting in ``[start, end]``.

        Defaults to the configured lookback window ending now, for all
        devices.
        """
        now = self._clock()
        end = end or now
        start = start or end - self._config.trip_lookback
        result = ReconcileResult()

        with session_scope(self._session_factory) as session:
            candidate_ids = [
                trip.id
                for trip in trips.trips_missing_coordinates(session, start=start, end=end, device_id=device_id)
            ]

        for trip_id in candidate_ids:
            result.trips_checked += 1
            try:
                with session_scope(self._session_factory) as session:
                    trip = session.get(Trip, trip_id)
                    if trip is None:
                        continue
                    changed, resolved = self._fix_trip(session, trip)
            except OperationalError as exc:
                raise Gps51StoreError(f"Store unavailable during reconciliation: {exc}") from exc
            except SQLAlchemyError as exc:
                _logger.warning("Failed to reconcile trip id=%s", trip_id, exc_info=True)
                result.errors.append(f"trip {trip_id}: {exc.__class__.__name__}")
                continue
            if changed:
                result.trips_fixed += 1
            if not resolved:
                result.unresolved += 1

        _logger.info(
            "Reconciliation checked=%d fixed=%d unresolved=%d errors=%d",
            result.trips_checked,
            result.trips_fixed,
            result.unresolved,
            len(result.errors),
        )
        return result
