"""
Tests for the job scheduler and job registration
"""

import asyncio
import pytest

from paycycle.cache.cache_keys import CacheKeys
from paycycle.services.lock_coordinator import RedisLockCoordinator
from paycycle.tasks.jobs import (
    ADMIN_TASK_RECONCILIATION_JOB,
    PAYMENT_MONITORING_JOB,
    SUBSCRIPTION_EXPIRY_JOB,
    SUBSCRIPTION_RENEWAL_JOB,
    register_jobs,
)
from paycycle.tasks.scheduler import JobScheduler


@pytest.fixture
def scheduler(fake_redis):
    return JobScheduler(RedisLockCoordinator(fake_redis), shutdown_timeout=1.0)


def counting_job():
    calls = {"n": 0}

    async def run():
        calls["n"] += 1

    return calls, run


@pytest.mark.asyncio
async def test_run_completes_and_releases_lock(scheduler, fake_redis):
    calls, run = counting_job()
    scheduler.register("demo", interval=60, initial_delay=0, run_fn=run, lock_key="jobs:demo")

    assert await scheduler.run_job_now("demo") == "completed"
    assert calls["n"] == 1
    assert not await fake_redis.exists("jobs:demo")


@pytest.mark.asyncio
async def test_skips_when_lock_held_elsewhere(scheduler, fake_redis):
    """Another instance holds the lease: the tick is skipped"""
    calls, run = counting_job()
    scheduler.register("demo", interval=60, initial_delay=0, run_fn=run, lock_key="jobs:demo")
    await fake_redis.set_if_absent("jobs:demo", "other-instance", 60)

    assert await scheduler.execute("demo") == "skipped_locked"
    assert calls["n"] == 0
    assert await fake_redis.get_value("jobs:demo") == "other-instance"


@pytest.mark.asyncio
async def test_skips_when_lock_store_unreachable(scheduler, fake_redis):
    """No lease can be taken, so the job does not run at all"""
    calls, run = counting_job()
    scheduler.register("demo", interval=60, initial_delay=0, run_fn=run, lock_key="jobs:demo")
    fake_redis.fail = True

    assert await scheduler.execute("demo") == "skipped_lock_unavailable"
    assert calls["n"] == 0


@pytest.mark.asyncio
async def test_no_overlap_within_process(scheduler):
    release = asyncio.Event()
    started = asyncio.Event()

    async def blocking():
        started.set()
        await release.wait()

    scheduler.register("slow", interval=60, initial_delay=0, run_fn=blocking)

    first = asyncio.create_task(scheduler.execute("slow"))
    await started.wait()
    assert await scheduler.execute("slow") == "skipped_running"

    release.set()
    assert await first == "completed"


@pytest.mark.asyncio
async def test_timeout_releases_lock(scheduler, fake_redis):
    async def hang():
        await asyncio.sleep(5)

    scheduler.register(
        "hang", interval=60, initial_delay=0, run_fn=hang, lock_key="jobs:hang", timeout=0.05
    )

    assert await scheduler.execute("hang") == "timeout"
    assert not await fake_redis.exists("jobs:hang")

    status = scheduler.get_status()["jobs"][0]
    assert status["failures"] == 1
    assert "timed out" in status["last_error"]


@pytest.mark.asyncio
async def test_failure_is_recorded(scheduler):
    async def boom():
        raise RuntimeError("provider exploded")

    scheduler.register("boom", interval=60, initial_delay=0, run_fn=boom)

    assert await scheduler.execute("boom") == "failed"
    assert scheduler.get_status()["jobs"][0]["last_error"] == "provider exploded"
    # A failed run does not keep the job marked as running
    assert await scheduler.execute("boom") == "failed"


@pytest.mark.asyncio
async def test_registration_errors(scheduler):
    _, run = counting_job()
    scheduler.register("demo", interval=60, initial_delay=0, run_fn=run)

    with pytest.raises(ValueError):
        scheduler.register("demo", interval=60, initial_delay=0, run_fn=run)
    with pytest.raises(ValueError):
        scheduler.register("zero", interval=0, initial_delay=0, run_fn=run)
    with pytest.raises(KeyError):
        await scheduler.run_job_now("missing")


@pytest.mark.asyncio
async def test_start_status_stop(scheduler):
    _, run = counting_job()
    scheduler.register("demo", interval=60, initial_delay=30, run_fn=run, lock_key="jobs:demo")

    scheduler.start()
    status = scheduler.get_status()
    assert status["running"] is True
    assert status["jobs"][0]["name"] == "demo"
    assert status["jobs"][0]["next_run"] is not None

    await scheduler.stop()
    assert scheduler.get_status()["running"] is False


@pytest.mark.asyncio
async def test_register_jobs_disabled(scheduler, orchestrator):
    assert register_jobs(scheduler, orchestrator, config=orchestrator.config, jobs_enabled=False) == []
    assert scheduler.get_status()["jobs"] == []


@pytest.mark.asyncio
async def test_register_jobs_without_monitoring(scheduler, orchestrator):
    names = register_jobs(
        scheduler, orchestrator, config=orchestrator.config,
        jobs_enabled=True, monitoring_auto_start=False,
    )
    assert names == [SUBSCRIPTION_RENEWAL_JOB, SUBSCRIPTION_EXPIRY_JOB, ADMIN_TASK_RECONCILIATION_JOB]


@pytest.mark.asyncio
async def test_registered_jobs_use_their_own_locks(scheduler, orchestrator, fake_redis):
    """Renewal held elsewhere does not stop monitoring from running"""
    names = register_jobs(
        scheduler, orchestrator, config=orchestrator.config,
        jobs_enabled=True, monitoring_auto_start=True,
    )
    assert names[0] == PAYMENT_MONITORING_JOB

    await fake_redis.set_if_absent(CacheKeys.job_lock(SUBSCRIPTION_RENEWAL_JOB), "other", 60)

    assert await scheduler.run_job_now(SUBSCRIPTION_RENEWAL_JOB) == "skipped_locked"
    assert await scheduler.run_job_now(PAYMENT_MONITORING_JOB) == "completed"
    assert await scheduler.run_job_now(SUBSCRIPTION_EXPIRY_JOB) == "completed"
    assert await scheduler.run_job_now(ADMIN_TASK_RECONCILIATION_JOB) == "completed"
