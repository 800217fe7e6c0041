import asyncio
from datetime import datetime, timezone

import pytest
from apscheduler.triggers.cron import CronTrigger

from core.exceptions import ConfigurationError, RunRejectedError
from ingestion.scheduler import ETLScheduler, parse_schedule
from models.base import SyncMode, SyncRunStatus
from schemas.sync import SyncStatus


class BlockingPipeline:
    """Pipeline stand-in whose runs finish only when released"""

    def __init__(self, block: bool = True):
        self.calls = []
        self.release = asyncio.Event()
        if not block:
            self.release.set()
        self.finished = 0

    async def run(self, mode=SyncMode.FULL, since=None, limit=None):
        self.calls.append({"mode": mode, "since": since, "limit": limit})
        await self.release.wait()
        self.finished += 1
        now = datetime.now(timezone.utc)
        return SyncStatus(
            run_id=f"run-{len(self.calls)}",
            mode=mode,
            status=SyncRunStatus.SUCCESS,
            started_at=now,
            completed_at=now,
        )


@pytest.mark.parametrize("pattern", ["every-5-min", "hourly", "daily", "weekly", "*/10 * * * *"])
def test_parse_schedule_accepts_presets_and_cron(pattern):
    assert isinstance(parse_schedule(pattern), CronTrigger)


@pytest.mark.parametrize("pattern", ["not a cron", "99 * * * *", "fortnightly"])
def test_parse_schedule_rejects_invalid(pattern):
    with pytest.raises(ConfigurationError):
        parse_schedule(pattern)


@pytest.mark.asyncio
async def test_schedule_registers_and_replaces_jobs():
    scheduler = ETLScheduler(BlockingPipeline(block=False))
    scheduler.start()
    try:
        scheduler.schedule("etl", "hourly")
        scheduler.schedule("etl", "daily")
        scheduler.schedule("nightly-full", "0 3 * * *", SyncMode.FULL)

        jobs = {job["id"]: job for job in scheduler.list_jobs()}
        assert set(jobs) == {"etl", "nightly-full"}
        assert jobs["etl"]["next_run_time"] is not None
        assert jobs["etl"]["running"] is False

        assert scheduler.unschedule("nightly-full") is True
        assert scheduler.unschedule("nightly-full") is False
        assert [job["id"] for job in scheduler.list_jobs()] == ["etl"]
    finally:
        await scheduler.stop_all()


@pytest.mark.asyncio
async def test_run_now_returns_status():
    pipeline = BlockingPipeline(block=False)
    scheduler = ETLScheduler(pipeline)

    status = await scheduler.run_now(SyncMode.TEST, limit=5)

    assert status.status == SyncRunStatus.SUCCESS
    assert pipeline.calls == [{"mode": SyncMode.TEST, "since": None, "limit": 5}]
    assert scheduler.is_running("manual") is False


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped():
    pipeline = BlockingPipeline()
    scheduler = ETLScheduler(pipeline)

    await scheduler._on_tick("etl", SyncMode.INCREMENTAL)
    await asyncio.sleep(0)
    assert scheduler.is_running("etl")

    await scheduler._on_tick("etl", SyncMode.INCREMENTAL)
    await asyncio.sleep(0)

    pipeline.release.set()
    await scheduler.stop_all()

    assert len(pipeline.calls) == 1
    assert pipeline.finished == 1


@pytest.mark.asyncio
async def test_different_job_names_may_overlap():
    pipeline = BlockingPipeline()
    scheduler = ETLScheduler(pipeline)

    await scheduler._on_tick("etl", SyncMode.INCREMENTAL)
    await scheduler._on_tick("nightly-full", SyncMode.FULL)
    await asyncio.sleep(0)

    pipeline.release.set()
    await scheduler.stop_all()

    assert len(pipeline.calls) == 2


@pytest.mark.asyncio
async def test_manual_run_rejected_while_manual_run_in_flight():
    pipeline = BlockingPipeline()
    scheduler = ETLScheduler(pipeline)

    first = asyncio.create_task(scheduler.run_now())
    await asyncio.sleep(0)

    with pytest.raises(RunRejectedError):
        await scheduler.run_now()

    pipeline.release.set()
    assert (await first).status == SyncRunStatus.SUCCESS


@pytest.mark.asyncio
async def test_stop_all_waits_for_in_flight_runs():
    pipeline = BlockingPipeline()
    scheduler = ETLScheduler(pipeline)
    scheduler.start()

    await scheduler._on_tick("etl", SyncMode.INCREMENTAL)
    await asyncio.sleep(0)

    stopper = asyncio.create_task(scheduler.stop_all())
    await asyncio.sleep(0)
    assert not stopper.done()

    pipeline.release.set()
    await stopper

    assert pipeline.finished == 1
    assert scheduler.scheduler.running is False

    # No new runs after shutdown
    await scheduler._on_tick("etl", SyncMode.INCREMENTAL)
    assert len(pipeline.calls) == 1
