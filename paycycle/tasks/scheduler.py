# coding: utf-8
"""
Job Scheduler

Periodic jobs on APScheduler with cross-instance exclusion:

- a job never overlaps itself within one process
- each tick takes the job's distributed lock first and skips when it is held
  elsewhere or when the lock store is unreachable
- each run is bounded by its timeout
- stop() lets in-flight runs finish, up to the shutdown timeout
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from config.orchestrator import get_config
from paycycle.core.exceptions import LockCoordinatorUnavailable
from paycycle.services.lock_coordinator import LockCoordinator


@dataclass
class ScheduledJob:
    """A registered job and its run bookkeeping"""
    name: str
    interval: float
    initial_delay: float
    run_fn: Callable[[], Awaitable[Any]]
    lock_key: Optional[str] = None
    lock_ttl: Optional[int] = None
    timeout: Optional[float] = None

    running: bool = False
    runs: int = 0
    failures: int = 0
    skipped: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None


class JobScheduler:
    """
    register() jobs, then start(); run_job_now() runs one immediately under
    the same lock discipline.
    """

    def __init__(self, lock: LockCoordinator, shutdown_timeout: Optional[float] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._lock = lock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self._running = False
        self._stopping = False
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None
            else get_config().scheduler.shutdown_timeout_sec
        )

    def register(
        self,
        job_name: str,
        interval: float,
        initial_delay: float,
        run_fn: Callable[[], Awaitable[Any]],
        lock_key: Optional[str] = None,
        lock_ttl: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ScheduledJob:
        """
        Register a periodic job

        Args:
            job_name: Unique job name
            interval: Seconds between ticks
            initial_delay: Seconds before the first tick
            run_fn: Coroutine function to run
            lock_key: Distributed lock taken for each run (None: no lock)
            lock_ttl: Lock lease in seconds (defaults to the interval)
            timeout: Upper bound for one run in seconds
        """
        if interval <= 0:
            raise ValueError(f"Job {job_name}: interval must be positive")
        if job_name in self._jobs:
            raise ValueError(f"Job {job_name} is already registered")

        job = ScheduledJob(
            name=job_name,
            interval=interval,
            initial_delay=max(0.0, initial_delay),
            run_fn=run_fn,
            lock_key=lock_key,
            lock_ttl=lock_ttl or (int(interval) if lock_key else None),
            timeout=timeout,
        )
        self._jobs[job_name] = job
        if self._running:
            self._schedule(job)

        logger.info(f"Job registered: {job_name} every {interval}s (lock={lock_key})")
        return job

    def _schedule(self, job: ScheduledJob) -> None:
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(
                seconds=job.interval,
                start_date=datetime.now(UTC) + timedelta(seconds=job.initial_delay),
            ),
            id=job.name,
            name=job.name,
            args=[job.name],
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    def start(self) -> None:
        """Start ticking every registered job"""
        if self._running:
            logger.warning("Job scheduler already running")
            return

        self.scheduler = AsyncIOScheduler(timezone=UTC)
        for job in self._jobs.values():
            self._schedule(job)
        self.scheduler.start()
        self._running = True
        self._stopping = False

        logger.info(f"✅ Job scheduler started: {', '.join(self._jobs) or 'no jobs'}")

    async def stop(self) -> None:
        """Stop new ticks and wait for in-flight runs (bounded)"""
        if not self._running:
            return
        self._stopping = True
        self.scheduler.shutdown(wait=False)
        self._running = False

        pending = {task for task in self._in_flight if not task.done()}
        if pending:
            logger.info(f"Waiting for {len(pending)} running job(s) to finish")
            done, still_running = await asyncio.wait(pending, timeout=self.shutdown_timeout)
            if still_running:
                logger.warning(
                    f"⚠️ {len(still_running)} job(s) still running after "
                    f"{self.shutdown_timeout}s shutdown timeout, cancelling"
                )
                for task in still_running:
                    task.cancel()

        logger.info("Job scheduler stopped")

    async def _tick(self, job_name: str) -> None:
        if self._stopping:
            return
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            await self.execute(job_name)
        finally:
            if task is not None:
                self._in_flight.discard(task)

    async def execute(self, job_name: str) -> str:
        """
        Run one job once under its lock

        Returns:
            "completed", "failed", "timeout", "skipped_running",
            "skipped_locked" or "skipped_lock_unavailable"
        """
        job = self._jobs[job_name]
        if job.running:
            return self._skip(job, "skipped_running", "previous run still in progress")

        job.running = True
        try:
            token = None
            if job.lock_key:
                try:
                    token = await self._lock.acquire(job.lock_key, job.lock_ttl)
                except LockCoordinatorUnavailable as e:
                    return self._skip(job, "skipped_lock_unavailable", str(e))
                if token is None:
                    return self._skip(job, "skipped_locked", "lock held by another instance")

            try:
                return await self._run(job)
            finally:
                if token:
                    await self._lock.release(job.lock_key, token)
        finally:
            job.running = False

    async def _run(self, job: ScheduledJob) -> str:
        job.last_started_at = datetime.now(UTC)
        job.runs += 1
        try:
            if job.timeout:
                await asyncio.wait_for(job.run_fn(), timeout=job.timeout)
            else:
                await job.run_fn()
            result = "completed"
            job.last_error = None
        except asyncio.TimeoutError:
            result = "timeout"
            job.failures += 1
            job.last_error = f"timed out after {job.timeout}s"
            logger.error(f"❌ Job {job.name} timed out after {job.timeout}s")
        except Exception as e:
            result = "failed"
            job.failures += 1
            job.last_error = str(e)
            logger.exception(f"❌ Job {job.name} failed: {e}")

        job.last_finished_at = datetime.now(UTC)
        job.last_result = result
        elapsed = (job.last_finished_at - job.last_started_at).total_seconds()
        logger.debug(f"Job {job.name} {result} in {elapsed:.2f}s")
        return result

    @staticmethod
    def _skip(job: ScheduledJob, result: str, why: str) -> str:
        job.skipped += 1
        job.last_result = result
        logger.info(f"⏭️ Job {job.name} skipped: {why}")
        return result

    async def run_job_now(self, job_name: str) -> str:
        """Run a registered job immediately (manual trigger)"""
        if job_name not in self._jobs:
            raise KeyError(f"Unknown job: {job_name}")
        logger.info(f"Manual run requested: {job_name}")
        return await self.execute(job_name)

    def get_status(self) -> dict:
        """Scheduler and per-job status"""
        jobs = []
        for job in self._jobs.values():
            next_run = None
            if self.scheduler and self._running:
                scheduled = self.scheduler.get_job(job.name)
                if scheduled and scheduled.next_run_time:
                    next_run = scheduled.next_run_time.isoformat()
            jobs.append({
                "name": job.name,
                "interval_sec": job.interval,
                "lock_key": job.lock_key,
                "running": job.running,
                "runs": job.runs,
                "failures": job.failures,
                "skipped": job.skipped,
                "last_result": job.last_result,
                "last_error": job.last_error,
                "last_started_at": job.last_started_at.isoformat() if job.last_started_at else None,
                "last_finished_at": job.last_finished_at.isoformat() if job.last_finished_at else None,
                "next_run": next_run,
            })

        return {
            "running": self._running,
            "jobs": jobs,
        }
