"""APScheduler wrapper that runs the monitoring timers and workflow schedules."""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..models import utcnow


logger = structlog.get_logger(__name__)


def parse_cron(cron_expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """Build a trigger from a 5-field "minute hour day month day_of_week" expression."""
    fields = cron_expression.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {cron_expression}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week,
        timezone=timezone or "UTC",
    )


@dataclass
class ScheduledJob:
    job_id: str
    kind: str
    schedule: str
    description: Optional[str]
    added_at: datetime
    runs: int = 0
    failures: int = 0
    last_error: Optional[str] = None

    @property
    def interval_ms(self) -> Optional[float]:
        return float(self.schedule) if self.kind == "interval" else None


class JobScheduler:
    """
    Runs async callbacks on interval, cron and one-off triggers.

    Every job is registered with ``max_instances=1`` and ``coalesce=True``:
    a slow run never overlaps itself and missed runs collapse into one.
    Callback errors are logged and counted on the job, never raised into
    APScheduler.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.jobs: dict[str, ScheduledJob] = {}
        self.running = False

    async def start(self):
        if self.running:
            logger.warning("Job scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Job scheduler started")

    async def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        self.jobs.clear()
        logger.info("Job scheduler stopped")

    async def _invoke(self, job_id: str, func: Callable, *args, **kwargs) -> bool:
        record = self.jobs.get(job_id)
        try:
            outcome = func(*args, **kwargs)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error("Scheduled job failed", job_id=job_id, error=str(e))
            if record is not None:
                record.failures += 1
                record.last_error = str(e)
            return False
        if record is not None:
            record.runs += 1
        return True

    def _register(
        self,
        job_id: str,
        func: Callable,
        trigger: Any,
        kind: str,
        schedule: str,
        args: Optional[tuple],
        kwargs: Optional[dict[str, Any]],
        description: Optional[str],
    ) -> ScheduledJob:
        if job_id in self.jobs:
            logger.info("Replacing scheduled job", job_id=job_id)
            self.remove_job(job_id)

        self.scheduler.add_job(
            self._invoke,
            trigger=trigger,
            id=job_id,
            args=(job_id, func, *(args or ())),
            kwargs=kwargs or {},
            name=description or job_id,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        record = ScheduledJob(job_id, kind, schedule, description, utcnow())
        self.jobs[job_id] = record
        logger.info("Scheduled job", job_id=job_id, kind=kind, schedule=schedule, description=description)
        return record

    def add_interval_job(
        self,
        job_id: str,
        func: Callable,
        interval_ms: float,
        args: Optional[tuple] = None,
        kwargs: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ScheduledJob:
        if interval_ms <= 0:
            raise ValueError(f"Interval must be positive, got {interval_ms}ms")
        trigger = IntervalTrigger(seconds=interval_ms / 1000)
        return self._register(job_id, func, trigger, "interval", str(interval_ms), args, kwargs, description)

    def add_cron_job(
        self,
        job_id: str,
        func: Callable,
        cron_expression: str,
        args: Optional[tuple] = None,
        kwargs: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> ScheduledJob:
        trigger = parse_cron(cron_expression, timezone)
        return self._register(job_id, func, trigger, "cron", cron_expression, args, kwargs, description)

    def add_date_job(
        self,
        job_id: str,
        func: Callable,
        run_at: datetime,
        args: Optional[tuple] = None,
        kwargs: Optional[dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ScheduledJob:
        trigger = DateTrigger(run_date=run_at)
        return self._register(job_id, func, trigger, "once", run_at.isoformat(), args, kwargs, description)

    def _lookup(self, job_id: str):
        if job_id not in self.jobs:
            logger.warning("Job not found", job_id=job_id)
            return None
        return self.scheduler.get_job(job_id)

    def remove_job(self, job_id: str) -> bool:
        job = self._lookup(job_id)
        if job_id not in self.jobs:
            return False
        del self.jobs[job_id]
        # one-off jobs disappear from APScheduler once they have fired
        if job is not None:
            job.remove()
        logger.info("Removed job", job_id=job_id)
        return True

    def pause_job(self, job_id: str) -> bool:
        job = self._lookup(job_id)
        if job is None:
            return False
        job.pause()
        logger.info("Paused job", job_id=job_id)
        return True

    def resume_job(self, job_id: str) -> bool:
        job = self._lookup(job_id)
        if job is None:
            return False
        job.resume()
        logger.info("Resumed job", job_id=job_id)
        return True

    def get_job_status(self, job_id: str) -> Optional[dict[str, Any]]:
        record = self.jobs.get(job_id)
        job = self.scheduler.get_job(job_id) if record else None
        if job is None:
            return None
        next_run = getattr(job, "next_run_time", None)
        return {
            "job_id": job_id,
            "name": job.name,
            "type": record.kind,
            "schedule": record.schedule,
            "description": record.description,
            "added_at": record.added_at.isoformat(),
            "next_run": next_run.isoformat() if next_run else None,
            "paused": self.running and next_run is None,
            "runs": record.runs,
            "failures": record.failures,
            "last_error": record.last_error,
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        return [status for status in map(self.get_job_status, list(self.jobs)) if status]

    def get_scheduler_status(self) -> dict[str, Any]:
        upcoming = [
            job.next_run_time for job in self.scheduler.get_jobs()
            if getattr(job, "next_run_time", None)
        ]
        return {
            "running": self.running,
            "job_count": len(self.jobs),
            "next_run": min(upcoming).isoformat() if upcoming else None,
            "failures": sum(record.failures for record in self.jobs.values()),
        }

    async def run_job_once(self, job_id: str) -> bool:
        """Run a job's callback now, outside its schedule."""
        job = self._lookup(job_id)
        if job is None:
            return False
        # args are (job_id, func, *callback args) as registered by _register
        ok = await self._invoke(*job.args, **job.kwargs)
        logger.info("Ran job manually", job_id=job_id, ok=ok)
        return ok
