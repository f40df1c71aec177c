"""APScheduler-based background job service."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Interval jobs on the running asyncio event loop.

    Jobs are kept in memory: every instance registers its own jobs at start,
    and the jobs themselves are safe to run on all instances at once.
    """

    def __init__(
        self,
        misfire_grace_seconds: int = 60,
        timezone_name: str = "UTC",
    ) -> None:
        """
        Initialize the scheduler service.

        Args:
            misfire_grace_seconds: How late a run may start before it is skipped
            timezone_name: Scheduler timezone
        """
        self._misfire_grace = misfire_grace_seconds
        self._timezone = timezone_name
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = self._create_scheduler()
        return self._scheduler

    def _create_scheduler(self) -> AsyncIOScheduler:
        job_defaults = {
            "coalesce": True,  # Combine missed runs into one
            "max_instances": 1,  # Prevent overlapping runs
            "misfire_grace_time": self._misfire_grace,
        }

        scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults=job_defaults,
            timezone=self._timezone,
        )
        logger.debug(f"Scheduler configured, timezone={self._timezone}")
        return scheduler

    def start(self) -> None:
        """Start the scheduler. Must be called from inside the event loop."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")
        else:
            logger.warning("Scheduler is already running")

    def shutdown(self, wait: bool = False) -> None:
        """
        Shutdown the scheduler.

        Args:
            wait: Wait for running jobs to complete
        """
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Scheduler shutdown complete")

    def add_job(
        self,
        job_id: str,
        func: Callable[..., Any],
        interval_seconds: int,
        run_immediately: bool = False,
    ) -> None:
        """
        Add an interval-based job, replacing any job with the same id.

        Args:
            job_id: Unique identifier for the job
            func: Coroutine function or plain callable to execute
            interval_seconds: Seconds between runs
            run_immediately: Make the first run happen now instead of after one interval
        """
        extra: dict[str, Any] = {}
        if run_immediately:
            # next_run_time=None would add the job paused, so only pass it when set
            extra["next_run_time"] = datetime.now(timezone.utc)

        self.scheduler.add_job(
            func,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            name=job_id,
            replace_existing=True,
            **extra,
        )
        logger.info(f"Job '{job_id}' added with {interval_seconds}s interval")

    def remove_job(self, job_id: str) -> bool:
        """
        Remove a job from the scheduler.

        Returns:
            True if job was removed, False if not found
        """
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info(f"Job '{job_id}' removed")
        return True

    def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        job = self.scheduler.get_job(job_id)
        if job is None:
            return None
        return {
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time,
        }

    def list_jobs(self) -> list[dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time,
            }
            for job in self.scheduler.get_jobs()
        ]

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
