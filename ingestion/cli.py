"""
Command-line entry point for the facility ETL.

Commands:
    run                   one-shot incremental sync (full when no watermark exists)
    schedule [pattern]    recurring sync until SIGINT/SIGTERM
    full-sync             ignore the watermark and fetch everything
    incremental [date]    fetch records updated after ``date`` (ISO 8601)
    test [--limit N]      bounded smoke run

Exit codes: 0 on success or partial success, 1 on fatal or configuration
errors, 2 on usage errors.
"""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import List, Optional

from core.config import Settings, get_settings
from core.database import create_session_factory
from core.exceptions import ConfigurationError, ETLException, FatalError
from core.logging import setup_logging
from ingestion.pipeline import DEFAULT_TEST_LIMIT, ETLPipeline, build_pipeline
from ingestion.scheduler import SCHEDULE_PRESETS, ETLScheduler, parse_schedule
from models.base import SyncMode
from schemas.sync import SyncStatus
from storage.base import FacilityStore
from storage.postgres import PostgresFacilityStore
import logging

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected ISO 8601 (e.g. 2024-01-15)")
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid count '{value}'")
    if parsed < 1:
        raise argparse.ArgumentTypeError("must be >= 1")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facility-etl",
        description="Treatment facility ETL pipeline",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True

    subparsers.add_parser("run", help="One-shot incremental sync")

    schedule = subparsers.add_parser("schedule", help="Recurring sync")
    schedule.add_argument(
        "pattern",
        nargs="?",
        default=None,
        help=f"Preset ({', '.join(SCHEDULE_PRESETS)}) or cron expression; defaults to ETL_SCHEDULE or 'daily'",
    )
    schedule.add_argument(
        "--mode",
        choices=[SyncMode.FULL.value, SyncMode.INCREMENTAL.value],
        default=SyncMode.INCREMENTAL.value,
    )

    subparsers.add_parser("full-sync", help="Fetch the entire dataset")

    incremental = subparsers.add_parser("incremental", help="Fetch records updated after a date")
    incremental.add_argument("from_date", nargs="?", type=_parse_date, default=None)

    test = subparsers.add_parser("test", help="Bounded smoke run")
    test.add_argument("--limit", type=_positive_int, default=DEFAULT_TEST_LIMIT)

    return parser


def build_store(settings: Settings) -> FacilityStore:
    engine, session_factory = create_session_factory(settings.DATABASE_URL)
    return PostgresFacilityStore(session_factory, engine)


def format_summary(status: SyncStatus) -> str:
    lines = [
        f"Sync {status.run_id} ({status.mode.value}) {status.status.value.upper()}",
        f"  extracted:   {status.records_extracted}",
        f"  transformed: {status.records_transformed}",
        f"  validated:   {status.records_validated}",
        f"  loaded:      {status.records_loaded}",
        f"  rejected:    {status.records_rejected}",
        f"  duplicates:  {status.duplicates_merged}",
        f"  geocoded:    {status.records_geocoded}",
        f"  batches:     {status.batches_processed} ok, {status.batches_failed} failed",
        f"  duration:    {status.duration_seconds:.2f}s",
    ]
    if status.error_message:
        lines.append(f"  error:       {status.error_message}")
    return "\n".join(lines)


async def run_scheduled(pipeline: ETLPipeline, pattern: str, mode: SyncMode, stop_event: Optional[asyncio.Event] = None) -> None:
    scheduler = ETLScheduler(pipeline)
    scheduler.schedule("etl", pattern, mode)
    scheduler.start()

    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info(f"Running on schedule '{pattern}'. Press Ctrl+C to stop.")
    await stop_event.wait()
    await scheduler.stop_all()


async def execute(args: argparse.Namespace, settings: Settings, store: Optional[FacilityStore] = None) -> int:
    store = store or build_store(settings)
    pipeline = build_pipeline(settings, store)
    try:
        if args.command == "schedule":
            pattern = args.pattern or settings.ETL_SCHEDULE or "daily"
            parse_schedule(pattern)
            await run_scheduled(pipeline, pattern, SyncMode(args.mode))
            return 0

        if args.command == "full-sync":
            status = await pipeline.run(SyncMode.FULL)
        elif args.command == "incremental":
            status = await pipeline.run(SyncMode.INCREMENTAL, since=args.from_date)
        elif args.command == "test":
            status = await pipeline.run(SyncMode.TEST, limit=args.limit)
        else:
            status = await pipeline.run(SyncMode.INCREMENTAL)

        print(format_summary(status))
        return 0

    except FatalError as e:
        if pipeline.last_status is not None:
            print(format_summary(pipeline.last_status))
        print(f"Fatal: {e.message}", file=sys.stderr)
        return 1

    finally:
        await pipeline.extractor.close()
        if pipeline.geocoder is not None:
            await pipeline.geocoder.close()
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = get_settings()
        setup_logging(args.log_level or settings.LOG_LEVEL)
        return asyncio.run(execute(args, settings))
    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return 1
    except ETLException as e:
        print(f"ETL failed: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
