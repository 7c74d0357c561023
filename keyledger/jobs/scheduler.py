"""
Job Scheduler
=============

Registry of the lifecycle jobs plus an in-process asyncio scheduler.

Each job is a plain function returning a JobResult and can equally be run
by an external cron via ``python -m keyledger.scripts.run_job``. The
in-process scheduler runs at most one instance of a given job at a time;
there is no cross-process lock, which is safe because every job is
idempotent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from keyledger.config import settings
from keyledger.core.async_utils import run_sync
from keyledger.core.clock import as_utc, utcnow
from keyledger.core.errors import UnknownJob
from keyledger.jobs.credential_rotation import run_credential_rotation
from keyledger.jobs.quota_reset import run_quota_reset
from keyledger.jobs.security_analysis import run_security_analysis
from keyledger.jobs.weekly_report import run_weekly_report
from keyledger.models.outcomes import JobResult

logger = logging.getLogger(__name__)

JOBS: Dict[str, Callable[[], JobResult]] = {
    "quota_reset": run_quota_reset,
    "credential_rotation": run_credential_rotation,
    "security_analysis": run_security_analysis,
    "weekly_report": run_weekly_report,
}

# Upper bound for one job run inside the scheduler thread.
JOB_TIMEOUT_S = 3600


def run_job(name: str) -> JobResult:
    """Run a registered job synchronously."""
    job = JOBS.get(name)
    if job is None:
        raise UnknownJob(detail=f"unknown job {name!r}", context={"job": name})
    return job()


@dataclass(frozen=True)
class Schedule:
    """Fire at ``hour:minute`` UTC every day, or only on ``weekday`` (0 = Monday)."""

    hour: int
    minute: int = 0
    weekday: Optional[int] = None

    def next_run_after(self, moment: datetime) -> datetime:
        moment = as_utc(moment)
        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        if self.weekday is not None:
            candidate += timedelta(days=(self.weekday - candidate.weekday()) % 7)
        return candidate


def default_schedules() -> Dict[str, Schedule]:
    return {
        "quota_reset": Schedule(hour=settings.quota_reset_hour),
        "credential_rotation": Schedule(hour=settings.rotation_hour),
        "security_analysis": Schedule(hour=settings.security_analysis_hour),
        "weekly_report": Schedule(hour=settings.weekly_report_hour, weekday=settings.weekly_report_weekday),
    }


class JobScheduler:
    """Runs registered jobs on their schedules inside the event loop."""

    def __init__(
        self,
        schedules: Optional[Dict[str, Schedule]] = None,
        jobs: Optional[Dict[str, Callable[[], JobResult]]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.schedules = schedules if schedules is not None else default_schedules()
        self.jobs = jobs if jobs is not None else JOBS
        self.clock = clock
        self._running: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

    async def trigger(self, name: str) -> Optional[JobResult]:
        """Run ``name`` now unless an instance is already running.

        Returns None when the run was skipped because of overlap.
        """
        job = self.jobs.get(name)
        if job is None:
            raise UnknownJob(detail=f"unknown job {name!r}", context={"job": name})
        if name in self._running:
            logger.warning("job_overlap_skipped", extra={"job": name})
            return None
        self._running.add(name)
        try:
            return await run_sync(job, timeout=JOB_TIMEOUT_S)
        finally:
            self._running.discard(name)

    def is_running(self, name: str) -> bool:
        return name in self._running

    async def _loop(self, name: str, schedule: Schedule) -> None:
        while True:
            next_run = schedule.next_run_after(self.clock())
            delay = max(0.0, (next_run - self.clock()).total_seconds())
            logger.info("job_scheduled", extra={"job": name, "next_run": next_run.isoformat()})
            await asyncio.sleep(delay)
            try:
                await self.trigger(name)
            except asyncio.CancelledError:
                raise
            except Exception:
                # job_run already records failures inside the job; this covers the thread hand-off.
                logger.exception("job_dispatch_failed", extra={"job": name})

    def start(self) -> None:
        for name, schedule in self.schedules.items():
            if name not in self.jobs:
                raise UnknownJob(detail=f"schedule for unknown job {name!r}", context={"job": name})
            self._tasks.append(asyncio.create_task(self._loop(name, schedule), name=f"job:{name}"))
        logger.info("scheduler_started", extra={"jobs": sorted(self.schedules)})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("scheduler_stopped")
