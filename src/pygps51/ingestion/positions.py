"""Position ingestion: ``lastposition`` → canonical state → store → events."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pygps51.client import Gps51Client
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51DataError, Gps51StoreError
from pygps51.ingestion.normalize import normalize
from pygps51.models.position import RawPosition
from pygps51.models.state import CanonicalState
from pygps51.state.events import EventCandidate, EventDetector, EventRecorder
from pygps51.storage import devices, positions
from pygps51.storage.database import session_scope

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclasses.dataclass
class IngestResult:
    fetched: int = 0
    current_updated: int = 0
    history_added: int = 0
    duplicates: int = 0
    replayed: int = 0
    events: int = 0
    errors: list[str] = dataclasses.field(default_factory=list)
    last_query_time: int = 0


@dataclasses.dataclass(frozen=True)
class AppliedReading:
    state: CanonicalState
    current_updated: bool
    history_added: bool
    events: list[EventCandidate]


class PositionIngestor:
    """Runs one ingestion cycle over a set of devices.

    Each record is applied in its own transaction: history append, forward
    only update of the current row, event detection against the previous
    current row and event recording.  A replayed reading (not newer than the
    current row) is kept in history if missing but produces no events.
    """

    def __init__(
        self,
        client: Gps51Client,
        session_factory: sessionmaker[Session],
        config: Gps51Config,
        *,
        detector: EventDetector | None = None,
        recorder: EventRecorder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._config = config
        self._detector = detector or EventDetector(config.events)
        self._recorder = recorder or EventRecorder(session_factory, config, clock=clock)
        self._clock = clock

    async def sync_device_list(self) -> tuple[int, int, int]:
        """Refresh the device registry from ``querymonitorlist``.

        Returns ``(created, updated, deactivated)``.
        """
        listed = await self._client.query_devices()
        now = self._clock()
        with session_scope(self._session_factory) as session:
            counts = devices.sync_device_list(session, listed, now=now)
        _logger.info("Device list synced: created=%d updated=%d deactivated=%d", *counts)
        return counts

    def apply_record(self, raw: Mapping[str, Any], *, observed_at: datetime) -> AppliedReading:
        """Normalize and store one raw record.

        Raises
        ------
        Gps51DataError
            The record cannot be parsed.
        """
        try:
            record = RawPosition.model_validate(dict(raw))
        except ValidationError as exc:
            raise Gps51DataError(f"Malformed position record: {exc.errors()[0]['msg']}", record=raw) from exc

        with session_scope(self._session_factory) as session:
            devices.ensure_device(session, record.device_id, now=observed_at)
            previous = positions.get_current(session, record.device_id)
            state = normalize(
                record,
                observed_at=observed_at,
                previous_ignition=previous.ignition_on if previous is not None else None,
                config=self._config.normalizer,
            )
            history_added = positions.append_history(session, state, recorded_at=observed_at)

            if previous is not None and state.timestamp <= previous.timestamp:
                return AppliedReading(state=state, current_updated=False, history_added=history_added, events=[])

            candidates = self._detector.evaluate(previous, state)
            current_updated = positions.upsert_current(session, state, observed_at=observed_at)
            recorded = self._recorder.record(candidates, session=session) if current_updated else []
            return AppliedReading(
                state=state,
                current_updated=current_updated,
                history_added=history_added,
                events=recorded,
            )

    async def ingest(self, device_ids: Iterable[str] | None = None, *, last_query_time: int = 0) -> IngestResult:
        """Fetch the latest positions and apply them record by record."""
        ids = list(device_ids) if device_ids is not None else []
        if not ids:
            with session_scope(self._session_factory) as session:
                ids = devices.active_device_ids(session)
        if not ids:
            await self.sync_device_list()
            with session_scope(self._session_factory) as session:
                ids = devices.active_device_ids(session)

        result = IngestResult(last_query_time=last_query_time)
        if not ids:
            _logger.info("No active devices to ingest")
            return result

        batch = await self._client.last_positions(ids, last_query_time)
        observed_at = self._clock()
        result.fetched = len(batch.records)
        result.last_query_time = batch.last_query_time

        for raw in batch.records:
            try:
                applied = self.apply_record(raw, observed_at=observed_at)
            except Gps51DataError as exc:
                _logger.warning("Skipping position record: %s", exc)
                result.errors.append(str(exc))
                continue
            except OperationalError as exc:
                raise Gps51StoreError(f"Store unavailable during ingestion: {exc}") from exc
            except SQLAlchemyError as exc:
                _logger.warning("Failed to store position for device=%s", raw.get("deviceid"), exc_info=True)
                result.errors.append(f"{raw.get('deviceid')}: {exc.__class__.__name__}")
                continue

            if applied.current_updated:
                result.current_updated += 1
            elif not applied.events:
                result.replayed += 1
            if applied.history_added:
                result.history_added += 1
            else:
                result.duplicates += 1
            result.events += len(applied.events)

        _logger.info(
            "Ingest fetched=%d current=%d history=%d duplicates=%d replayed=%d events=%d errors=%d",
            result.fetched,
            result.current_updated,
            result.history_added,
            result.duplicates,
            result.replayed,
            result.events,
            len(result.errors),
        )
        return result
