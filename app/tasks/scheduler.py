import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from app.services import discord_error_notifier

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledJob:
    """A named periodic job and the outcome of its last run"""
    name: str
    interval_seconds: float
    func: JobFunc
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    runs: int = 0
    failures: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_duration_ms: Optional[float] = None
    last_result: Any = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "running": self.lock.locked(),
            "runs": self.runs,
            "failures": self.failures,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_duration_ms": self.last_duration_ms,
            "last_result": self.last_result,
            "last_error": self.last_error,
        }


class Scheduler:
    """
    Runs registered jobs on fixed intervals, one asyncio task per job.

    A job never overlaps itself: a tick that arrives while the previous run
    is still going is skipped. A failing run is logged, reported to Discord
    and does not stop the next tick of that job or any other.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._jobs: Dict[str, ScheduledJob] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sleep = sleep

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def jobs(self) -> Dict[str, ScheduledJob]:
        return dict(self._jobs)

    def register(self, name: str, interval_seconds: float, func: JobFunc) -> ScheduledJob:
        if name in self._jobs:
            raise ValueError(f"Job already registered: {name}")
        if interval_seconds <= 0:
            raise ValueError(f"Job interval must be positive: {name}")

        job = ScheduledJob(name=name, interval_seconds=interval_seconds, func=func)
        self._jobs[name] = job
        return job

    async def run_job(self, name: str) -> bool:
        """
        Run one job now.

        Returns False when the job is already running (the tick is skipped),
        True otherwise, whether the run succeeded or failed.
        """
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")

        if job.lock.locked():
            logger.warning(f"Job {name} still running, skipping this tick")
            return False

        async with job.lock:
            job.last_started_at = datetime.now(timezone.utc)
            started = time.perf_counter()
            try:
                job.last_result = await job.func()
                job.last_error = None
                logger.info(f"Job {name} finished: {job.last_result}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                job.failures += 1
                job.last_error = str(e)
                logger.error(f"Job {name} failed: {e}", exc_info=True)
                notifier = discord_error_notifier.error_notifier
                if notifier:
                    await notifier.send_error(e, context={"job": name, "failures": job.failures})
            finally:
                job.runs += 1
                job.last_finished_at = datetime.now(timezone.utc)
                job.last_duration_ms = round((time.perf_counter() - started) * 1000, 2)

        return True

    async def _loop(self, job: ScheduledJob):
        while True:
            await self.run_job(job.name)
            await self._sleep(job.interval_seconds)

    def start(self):
        if self._tasks:
            return

        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._loop(job), name=f"scheduler:{name}")

        logger.info(f"Scheduler started with jobs: {', '.join(self._jobs) or 'none'}")

    async def stop(self):
        tasks = list(self._tasks.values())
        self._tasks.clear()

        for task in tasks:
            task.cancel()

        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        if tasks:
            logger.info("Scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "jobs": {name: job.to_dict() for name, job in self._jobs.items()},
        }
