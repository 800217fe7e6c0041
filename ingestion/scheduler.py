import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.exceptions import ConfigurationError, RunRejectedError
from ingestion.pipeline import ETLPipeline
from models.base import SyncMode
from schemas.sync import SyncStatus

logger = logging.getLogger(__name__)

SCHEDULE_PRESETS: Dict[str, str] = {
    "every-5-min": "*/5 * * * *",
    "every-15-min": "*/15 * * * *",
    "every-30-min": "*/30 * * * *",
    "hourly": "0 * * * *",
    "daily": "0 0 * * *",
    "weekly": "0 0 * * 0",
}

MANUAL_JOB = "manual"


def parse_schedule(pattern: str) -> CronTrigger:
    """Named preset or 5-field crontab expression to an APScheduler trigger."""
    expression = SCHEDULE_PRESETS.get(pattern.strip(), pattern.strip())
    try:
        return CronTrigger.from_crontab(expression, timezone="UTC")
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"Invalid schedule pattern: '{pattern}'",
            context={"presets": sorted(SCHEDULE_PRESETS)},
            original_exception=e
        )


class ETLScheduler:
    """
    Cron-driven trigger for the ETL pipeline.

    Each tick starts the run as a task and returns, so overlap is decided
    here rather than by APScheduler's instance limit: a tick for a job name
    whose previous run is still in flight is skipped and logged.
    """

    def __init__(self, pipeline: ETLPipeline, scheduler: Optional[AsyncIOScheduler] = None):
        self.pipeline = pipeline
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._running: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

    def start(self):
        """Start the scheduler (needs a running event loop)"""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("ETL Scheduler started")

    def schedule(self, name: str, pattern: str, mode: SyncMode = SyncMode.INCREMENTAL) -> None:
        """Register a recurring job. Re-registering a name replaces the previous job."""
        trigger = parse_schedule(pattern)
        self.scheduler.add_job(
            self._on_tick,
            trigger=trigger,
            id=name,
            name=name,
            args=[name, SyncMode(mode)],
            replace_existing=True,
            coalesce=True,
        )
        logger.info(f"Scheduled job '{name}' ({pattern}) in {SyncMode(mode).value} mode")

    def unschedule(self, name: str) -> bool:
        try:
            self.scheduler.remove_job(name)
        except JobLookupError:
            return False
        logger.info(f"Removed job '{name}'")
        return True

    def list_jobs(self) -> List[Dict[str, Any]]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run: Optional[datetime] = getattr(job, "next_run_time", None)
            jobs.append({
                "id": job.id,
                "trigger": str(job.trigger),
                "next_run_time": next_run.isoformat() if next_run else None,
                "running": job.id in self._running,
            })
        return jobs

    def is_running(self, name: str) -> bool:
        return name in self._running

    async def run_now(
        self,
        mode: SyncMode = SyncMode.INCREMENTAL,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> SyncStatus:
        """Run the pipeline once, immediately. Fatal errors propagate to the caller."""
        task = self._launch(MANUAL_JOB, SyncMode(mode), since, limit)
        if task is None:
            raise RunRejectedError(
                "Manual run rejected",
                context={"stopping": self._stopping, "running": MANUAL_JOB in self._running}
            )
        return await task

    async def _on_tick(self, name: str, mode: SyncMode) -> None:
        task = self._launch(name, mode)
        if task is not None:
            task.add_done_callback(self._log_outcome)

    def _launch(
        self,
        name: str,
        mode: SyncMode,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> Optional[asyncio.Task]:
        if self._stopping:
            logger.info(f"Scheduler stopping; not starting '{name}'")
            return None
        if name in self._running:
            logger.warning(f"Skipping tick for '{name}': previous run still in progress")
            return None

        self._running.add(name)
        task = asyncio.create_task(self._execute(name, mode, since, limit), name=f"etl-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _execute(
        self,
        name: str,
        mode: SyncMode,
        since: Optional[datetime],
        limit: Optional[int]
    ) -> SyncStatus:
        logger.info(f"Scheduler: starting '{name}' ({mode.value})")
        try:
            return await self.pipeline.run(mode=mode, since=since, limit=limit)
        finally:
            self._running.discard(name)

    @staticmethod
    def _log_outcome(task: asyncio.Task) -> None:
        if task.cancelled():
            logger.warning(f"Scheduler: {task.get_name()} cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Scheduler: {task.get_name()} failed - {error}")
        else:
            logger.info(f"Scheduler: {task.get_name()} finished - {task.result().summary()}")

    async def stop_all(self) -> None:
        """
        Cooperative shutdown: no new runs start, in-flight runs finish, then
        the scheduler shuts down. Batches are never interrupted.
        """
        self._stopping = True
        if self.scheduler.running:
            self.scheduler.pause()

        in_flight = list(self._tasks)
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} in-flight run(s) to finish")
            await asyncio.gather(*in_flight, return_exceptions=True)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("ETL Scheduler stopped")
