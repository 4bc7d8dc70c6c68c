"""
Named cron jobs on top of APScheduler's AsyncIOScheduler.

Jobs are registered up front, started together and stopped together.
A failing run is logged and swallowed; it never takes down the process
or prevents the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

logger = logging.getLogger(__name__)

JobHandler = Callable[[], Awaitable[None]]


class JobStatus(str, Enum):
    registered = "registered"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"
    idle = "idle"


@dataclass
class ScheduledJob:
    """A registered job and the bookkeeping for its most recent run."""

    name: str
    cron: str
    handler: JobHandler
    trigger: CronTrigger
    status: JobStatus = JobStatus.registered
    last_result: Optional[JobStatus] = None
    last_started: Optional[datetime] = None
    last_finished: Optional[datetime] = None
    last_error: Optional[str] = None
    runs: int = 0
    failures: int = 0
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    def snapshot(self) -> dict:
        return {
            "name": self.name,
            "cron": self.cron,
            "status": self.status.value,
            "last_result": self.last_result.value if self.last_result else None,
            "last_started": self.last_started,
            "last_finished": self.last_finished,
            "last_error": self.last_error,
            "runs": self.runs,
            "failures": self.failures,
        }


class Scheduler:
    """Registry of named cron jobs driven by an AsyncIOScheduler."""

    def __init__(self, timezone_name: str = "UTC") -> None:
        self._timezone = timezone_name
        self._jobs: dict[str, ScheduledJob] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    def schedule_job(self, name: str, cron: str, handler: JobHandler) -> ScheduledJob:
        """
        Register a job. Does not start it.

        Raises:
            ValueError: duplicate name or invalid crontab expression.
        """
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        trigger = CronTrigger.from_crontab(cron, timezone=self._timezone)
        job = ScheduledJob(name=name, cron=cron, handler=handler, trigger=trigger)
        self._jobs[name] = job
        logger.debug("Registered job %s (%s)", name, cron)
        return job

    def start(self) -> None:
        """Start every registered job. Must be called with a running event loop."""
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(
            timezone=self._timezone,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        for job in self._jobs.values():
            self._scheduler.add_job(
                self.run_job, job.trigger, args=[job.name], id=job.name, name=job.name
            )
            job.status = JobStatus.idle
        self._scheduler.start()
        logger.info("Started %d jobs", len(self._jobs))

    def stop(self) -> None:
        """Stop all timers and cancel runs still in progress."""
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        cancelled = 0
        for job in self._jobs.values():
            for task in list(job._tasks):
                if not task.done():
                    task.cancel()
                    cancelled += 1
        logger.info("Stopped all jobs (%d runs cancelled)", cancelled)

    async def run_job(self, name: str) -> JobStatus:
        """
        Execute one run of a job.

        Handler errors are logged and swallowed. Cancellation from stop()
        propagates.
        """
        job = self._jobs[name]
        task = asyncio.current_task()
        if task is not None:
            job._tasks.add(task)

        logger.info("Running job: %s", name)
        job.status = JobStatus.running
        job.last_started = datetime.now(timezone.utc)
        job.runs += 1
        try:
            await job.handler()
        except asyncio.CancelledError:
            job.last_result = JobStatus.failed
            job.last_error = "cancelled"
            logger.warning("Cancelled: %s", name)
            raise
        except Exception as exc:
            job.failures += 1
            job.last_result = JobStatus.failed
            job.last_error = str(exc)
            logger.exception("Failed: %s", name)
        else:
            job.last_result = JobStatus.succeeded
            job.last_error = None
            logger.info("Completed: %s", name)
        finally:
            job.last_finished = datetime.now(timezone.utc)
            job.status = JobStatus.idle
            if task is not None:
                job._tasks.discard(task)
        return job.last_result

    def status(self) -> list[dict]:
        return [job.snapshot() for job in self._jobs.values()]
