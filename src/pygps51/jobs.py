"""Scheduler entry points.

Each job is a coroutine that builds its own store and client from a
:class:`~pygps51.config.Gps51Config`, runs under a wall-clock budget and
returns whatever it completed.  Jobs are idempotent, so a run cut short by
its budget is simply continued by the next invocation.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from pygps51._ratelimit import SqlBackoffStore
from pygps51._transport import Transport
from pygps51.client import Gps51Client
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51StoreError
from pygps51.ingestion.derive import TripDeriver
from pygps51.ingestion.history import HistoryBackfiller, HistoryBackfillResult
from pygps51.ingestion.positions import IngestResult, PositionIngestor
from pygps51.ingestion.reconcile import CoordinateReconciler, ReconcileResult
from pygps51.ingestion.trips import TripSyncResult, TripSynchronizer
from pygps51.session import CredentialSource, StoredCredentials
from pygps51.state.events import EventRecorder
from pygps51.storage import devices
from pygps51.storage.database import check_store, create_db_engine, init_db, make_session_factory, session_scope

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclasses.dataclass
class JobContext:
    """Store handles shared by the components of one job run.

    *transport* replaces the HTTP transport of every client the job creates.
    """

    config: Gps51Config
    engine: Engine
    session_factory: sessionmaker[Session]
    clock: Callable[[], datetime] = _utcnow
    transport: Transport | None = None

    @classmethod
    def create(cls, config: Gps51Config, *, clock: Callable[[], datetime] = _utcnow) -> JobContext:
        """Connect to ``config.database_url`` and create missing tables."""
        try:
            engine = create_db_engine(config.database_url, statement_timeout=config.statement_timeout)
            init_db(engine)
        except SQLAlchemyError as exc:
            raise Gps51StoreError(f"Store unavailable: {exc}") from exc
        factory = make_session_factory(engine)
        check_store(factory)
        return cls(config=config, engine=engine, session_factory=factory, clock=clock)

    def credentials(self) -> CredentialSource | None:
        if self.config.token:
            # Client builds a static credential from the config.
            return None
        return StoredCredentials(self.session_factory)

    def client(self, **kwargs: Any) -> Gps51Client:
        if self.transport is not None:
            kwargs.setdefault("transport", self.transport)
        kwargs.setdefault("credentials", self.credentials())
        kwargs.setdefault("backoff_store", SqlBackoffStore(self.session_factory))
        kwargs.setdefault("clock", self.clock)
        return Gps51Client(self.config, **kwargs)

    def dispose(self) -> None:
        self.engine.dispose()


@asynccontextmanager
async def _job_context(config: Gps51Config, context: JobContext | None) -> AsyncIterator[JobContext]:
    if context is not None:
        yield context
        return
    owned = JobContext.create(config)
    try:
        yield owned
    finally:
        owned.dispose()


async def _run_budgeted(name: str, work: Awaitable[_T], budget: float) -> _T | None:
    """Await *work* for at most *budget* seconds; ``None`` when cut short."""
    try:
        return await asyncio.wait_for(work, timeout=budget)
    except TimeoutError:
        _logger.warning("Job %s exceeded its %.0fs budget; remaining work is left for the next run", name, budget)
        return None
    except SQLAlchemyError as exc:
        raise Gps51StoreError(f"Store error in job {name}: {exc}") from exc


def _device_ids(context: JobContext, device_ids: Iterable[str] | None, *, include_inactive: bool = False) -> list[str]:
    if device_ids is not None:
        return list(device_ids)
    try:
        with session_scope(context.session_factory) as session:
            return devices.all_device_ids(session) if include_inactive else devices.active_device_ids(session)
    except SQLAlchemyError as exc:
        raise Gps51StoreError(f"Store unavailable: {exc}") from exc


async def run_ingest(
    config: Gps51Config,
    *,
    device_ids: Iterable[str] | None = None,
    refresh_devices: bool = False,
    context: JobContext | None = None,
) -> IngestResult | None:
    """Fetch latest positions, update current/history rows and record events."""
    async with _job_context(config, context) as ctx:

        async def _work() -> IngestResult:
            async with ctx.client() as client:
                ingestor = PositionIngestor(client, ctx.session_factory, config, clock=ctx.clock)
                if refresh_devices:
                    await ingestor.sync_device_list()
                return await ingestor.ingest(device_ids)

        return await _run_budgeted("ingest", _work(), config.ingest_budget)


async def run_trip_sync(
    config: Gps51Config,
    *,
    device_ids: Iterable[str] | None = None,
    full: bool = False,
    context: JobContext | None = None,
) -> list[TripSyncResult]:
    """Pull vendor trips for each device since its cursor.

    Returns the per-device results completed within the budget.
    """
    results: list[TripSyncResult] = []
    async with _job_context(config, context) as ctx:
        ids = _device_ids(ctx, device_ids)

        async def _work() -> None:
            async with ctx.client() as client:
                synchronizer = TripSynchronizer(client, ctx.session_factory, config, clock=ctx.clock)
                for device_id in ids:
                    results.extend(await synchronizer.sync_devices([device_id], full=full))

        await _run_budgeted("sync-trips", _work(), config.sync_budget)
    return results


async def run_trip_derivation(
    config: Gps51Config,
    *,
    device_ids: Iterable[str] | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    context: JobContext | None = None,
) -> list[TripSyncResult]:
    """Derive trips from position history for each device."""
    results: list[TripSyncResult] = []
    async with _job_context(config, context) as ctx:
        ids = _device_ids(ctx, device_ids)
        deriver = TripDeriver(ctx.session_factory, config, clock=ctx.clock)

        async def _work() -> None:
            for device_id in ids:
                results.append(deriver.derive_device(device_id, since=since, until=until))
                await asyncio.sleep(0)

        await _run_budgeted("derive-trips", _work(), config.sync_budget)
    return results


async def run_history_backfill(
    config: Gps51Config,
    *,
    device_ids: Iterable[str] | None = None,
    days: int | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    derive: bool = False,
    context: JobContext | None = None,
) -> list[HistoryBackfillResult]:
    """Fill position history from recorded tracks, optionally deriving trips afterwards.

    The window ends at *until* (default now) and starts at *since*, else
    *days* before the end, else the configured history lookback.
    """
    results: list[HistoryBackfillResult] = []
    async with _job_context(config, context) as ctx:
        ids = _device_ids(ctx, device_ids)

        async def _work() -> None:
            async with ctx.client() as client:
                backfiller = HistoryBackfiller(client, ctx.session_factory, config, clock=ctx.clock)
                end = until if until is not None else ctx.clock()
                start = since if since is not None or days is None else end - timedelta(days=days)
                start, end = backfiller.window(start, end)
                deriver = TripDeriver(ctx.session_factory, config, clock=ctx.clock) if derive else None
                for device_id in ids:
                    (result,) = await backfiller.backfill_devices([device_id], start, end)
                    if deriver is not None and result.inserted:
                        result.trips_derived = deriver.derive_device(device_id, since=start, until=end).created
                    results.append(result)

        await _run_budgeted("backfill-history", _work(), config.history_budget)
    return results


async def run_reconcile(
    config: Gps51Config,
    *,
    device_id: str | None = None,
    days: int | None = None,
    context: JobContext | None = None,
) -> ReconcileResult:
    """Backfill missing trip coordinates, device by device."""
    total = ReconcileResult()
    async with _job_context(config, context) as ctx:
        ids = _device_ids(ctx, [device_id] if device_id else None, include_inactive=True)
        reconciler = CoordinateReconciler(ctx.session_factory, config, clock=ctx.clock)
        end = ctx.clock()
        start = end - (timedelta(days=days) if days is not None else config.trip_lookback)

        async def _work() -> None:
            for current in ids:
                partial = reconciler.reconcile(device_id=current, start=start, end=end)
                total.trips_checked += partial.trips_checked
                total.trips_fixed += partial.trips_fixed
                total.unresolved += partial.unresolved
                total.errors.extend(partial.errors)
                await asyncio.sleep(0)

        await _run_budgeted("reconcile", _work(), config.reconcile_budget)
    return total


async def run_offline_check(config: Gps51Config, *, context: JobContext | None = None) -> list[str]:
    """Flip devices without recent data to offline; returns their ids."""
    async with _job_context(config, context) as ctx:
        recorder = EventRecorder(ctx.session_factory, config, clock=ctx.clock)

        async def _work() -> list[str]:
            return recorder.detect_stale_devices()

        flipped = await _run_budgeted("check-offline", _work(), config.ingest_budget)
    return flipped or []
