"""Command line entry point: ``python -m pygps51 <command>``.

Configuration is read from ``GPS51_*`` environment variables.  Each command
runs one budgeted job and prints a short summary; the exit status is 0 on
success, 1 when the job reported per-device errors and 2 on a fatal error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from datetime import datetime

from pygps51 import jobs
from pygps51.config import Gps51Config
from pygps51.exceptions import Gps51AuthExpiredError, Gps51Error

_logger = logging.getLogger(__name__)


def _parse_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pygps51", description="GPS51 fleet telemetry pipeline jobs.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    ingest = commands.add_parser("ingest", help="Fetch latest positions and record events")
    ingest.add_argument("--device", action="append", dest="devices", help="Only this device id (repeatable)")
    ingest.add_argument("--refresh-devices", action="store_true", help="Refresh the device list first")

    sync = commands.add_parser("sync-trips", help="Pull vendor trips since each device's cursor")
    sync.add_argument("--device", action="append", dest="devices", help="Only this device id (repeatable)")
    sync.add_argument("--full", action="store_true", help="Ignore cursors and re-fetch the lookback window")

    derive = commands.add_parser("derive-trips", help="Derive trips from stored position history")
    derive.add_argument("--device", action="append", dest="devices", help="Only this device id (repeatable)")
    derive.add_argument("--since", type=_parse_datetime, help="Window start (ISO-8601)")
    derive.add_argument("--until", type=_parse_datetime, help="Window end (ISO-8601)")

    reconcile = commands.add_parser("reconcile", help="Backfill missing trip coordinates")
    reconcile.add_argument("--device", dest="device", help="Only this device id")
    reconcile.add_argument("--days", type=int, help="Look back this many days (default: trip lookback)")

    backfill = commands.add_parser("backfill-history", help="Fill position history from recorded tracks")
    backfill.add_argument("--device", action="append", dest="devices", help="Only this device id (repeatable)")
    backfill.add_argument("--days", type=int, help="Look back this many days (default: history lookback)")
    backfill.add_argument("--since", type=_parse_datetime, help="Window start (ISO-8601)")
    backfill.add_argument("--until", type=_parse_datetime, help="Window end (ISO-8601)")
    backfill.add_argument("--derive", action="store_true", help="Derive trips from the backfilled history")

    commands.add_parser("check-offline", help="Mark devices without recent data offline")
    return parser


async def _run(args: argparse.Namespace, config: Gps51Config) -> int:
    if args.command == "ingest":
        result = await jobs.run_ingest(config, device_ids=args.devices, refresh_devices=args.refresh_devices)
        if result is None:
            print("ingest: budget exceeded")
            return 1
        print(
            f"ingest: fetched={result.fetched} current={result.current_updated} "
            f"history={result.history_added} events={result.events} errors={len(result.errors)}"
        )
        return 1 if result.errors else 0

    if args.command in ("sync-trips", "derive-trips"):
        if args.command == "sync-trips":
            results = await jobs.run_trip_sync(config, device_ids=args.devices, full=args.full)
        else:
            results = await jobs.run_trip_derivation(
                config, device_ids=args.devices, since=args.since, until=args.until
            )
        failed = 0
        for item in results:
            print(
                f"{args.command}: device={item.device_id} fetched={item.fetched} created={item.created} "
                f"updated={item.updated} skipped={item.skipped} flagged={item.flagged} errors={len(item.errors)}"
            )
            failed += bool(item.errors)
        return 1 if failed else 0

    if args.command == "reconcile":
        summary = await jobs.run_reconcile(config, device_id=args.device, days=args.days)
        print(
            f"reconcile: checked={summary.trips_checked} fixed={summary.trips_fixed} "
            f"unresolved={summary.unresolved} errors={len(summary.errors)}"
        )
        return 1 if summary.errors else 0

    if args.command == "backfill-history":
        backfilled = await jobs.run_history_backfill(
            config, device_ids=args.devices, days=args.days, since=args.since, until=args.until, derive=args.derive
        )
        for entry in backfilled:
            print(
                f"backfill-history: device={entry.device_id} fetched={entry.fetched} inserted={entry.inserted} "
                f"skipped={entry.skipped} trips={entry.trips_derived} errors={len(entry.errors)}"
            )
        return 1 if any(entry.errors for entry in backfilled) else 0

    flipped = await jobs.run_offline_check(config)
    print(f"check-offline: {len(flipped)} device(s) marked offline")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        config = Gps51Config.from_env()
        return asyncio.run(_run(args, config))
    except Gps51AuthExpiredError as exc:
        _logger.error("GPS51 credential expired or rejected: %s", exc)
        return 2
    except Gps51Error as exc:
        _logger.error("%s failed: %s", args.command, exc)
        return 2


if __name__ == "__main__":
    sys.exit(main())
