"""
Scheduler infrastructure for running the daily monitoring job.
"""

import logging
from typing import Any, Callable, Dict, Optional

from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from croniter import croniter


logger = logging.getLogger(__name__)


def validate_cron_expression(cron_expression: str) -> bool:
    """Validate a 5-field cron expression using croniter."""
    if len(cron_expression.split()) != 5:
        logger.error(f"Cron expression must have 5 parts: {cron_expression}")
        return False
    try:
        croniter(cron_expression)
        return True
    except (ValueError, KeyError) as e:
        logger.error(f"Invalid cron expression '{cron_expression}': {e}")
        return False


class Scheduler:
    """Async cron scheduler wrapper around APScheduler with optional persistence."""

    def __init__(
        self,
        db_url: str = "sqlite:///db/scheduler_jobs.db",
        timezone: str = "UTC",
        enable_persistence: bool = True,
    ):
        jobstores = {"default": SQLAlchemyJobStore(url=db_url)} if enable_persistence else {}

        job_defaults = {
            "coalesce": True,
            # a daily run must never overlap with itself
            "max_instances": 1,
            "misfire_grace_time": 3600,
        }

        self._scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            job_defaults=job_defaults,
            timezone=timezone,
        )
        self._started = False

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_cron_job(
        self,
        func: Callable,
        cron_expression: str,
        job_id: Optional[str] = None,
        **kwargs,
    ) -> None:
        """Add a job that runs on a cron schedule.

        ``func`` may be a callable or a ``module:function`` reference string;
        persistent job stores need the latter.
        """
        if not validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        trigger = CronTrigger.from_crontab(cron_expression, timezone=self._scheduler.timezone)
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Added cron job: {job_id or getattr(func, '__name__', func)} ({cron_expression})")

    def list_jobs(self) -> Dict[str, Any]:
        """List all scheduled jobs."""
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": job.next_run_time,
                "trigger": str(job.trigger),
            }
        return jobs
