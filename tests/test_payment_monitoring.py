"""
Tests for the payment monitoring loop
"""

import pytest
from datetime import datetime, timedelta, UTC
from decimal import Decimal

from paycycle.core.enums import (
    AdminTaskCategory,
    FailureCategory,
    MonitoringStatus,
    PaymentStatus,
)
from paycycle.core.exceptions import ProviderError, ProviderUnavailableError
from paycycle.database.models import Payment
from paycycle.services.admin_task_service import AdminTaskService
from paycycle.services.credit_service import CreditService
from paycycle.services.payment_state import get_ledger_row


def unavailable() -> ProviderUnavailableError:
    return ProviderUnavailableError("connection reset", provider="nowpayments")


@pytest.mark.asyncio
async def test_tick_detects_finished_and_allocates(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """confirming then finished: credited once and removed from the queue"""
    user = await make_user()
    await make_topup(user.id, "np-300", amount="10.00", queue=orchestrator.queue)
    fake_nowpayments.script("np-300", "confirming", "finished")

    first = await orchestrator.monitoring.run_tick()
    assert first == {"processed": 1, "errors": 0}
    assert await orchestrator.queue.contains("np-300")

    await orchestrator.monitoring.run_tick()
    assert not await orchestrator.queue.contains("np-300")

    async with session_maker() as session:
        assert await CreditService.get_balance(session, user.id) == Decimal("10.00")

    metrics = orchestrator.monitoring.get_metrics()
    assert metrics["total_payments_monitored"] == 2
    assert metrics["successful_updates"] == 2
    assert metrics["credits_allocated"] == 1


@pytest.mark.asyncio
async def test_retry_ceiling(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """N+1 consecutive failures: exactly N retries, then monitoring_failed"""
    user = await make_user()
    await make_topup(user.id, "np-301", queue=orchestrator.queue)
    fake_nowpayments.script("np-301", *[unavailable() for _ in range(4)])
    ceiling = orchestrator.config.monitoring.retry_attempts

    now = datetime.now(UTC)
    results = [await orchestrator.monitoring.process_payment("np-301", now=now) for _ in range(ceiling + 1)]

    assert results == ["retry_scheduled"] * ceiling + ["monitoring_failed"]

    async with session_maker() as session:
        row = await get_ledger_row(session, "np-301")
        assert row.retry_count == ceiling
        assert row.monitoring_status == MonitoringStatus.FAILED.value

        payment = await session.get(Payment, 1)
        assert payment.status == PaymentStatus.PENDING.value

        tasks = await AdminTaskService.list_open(
            session, category=AdminTaskCategory.PAYMENT_MONITORING_FAILED
        )
        assert len(tasks) == 1

    record = await orchestrator.failures.get("np-301")
    assert record.category == FailureCategory.MONITORING_FAILED
    assert record.attempts == ceiling + 1
    assert not await orchestrator.queue.contains("np-301")


@pytest.mark.asyncio
async def test_retry_backoff_schedule(orchestrator, fake_nowpayments, make_user, make_topup):
    """A failed poll requeues the entry after the retry delay"""
    user = await make_user()
    await make_topup(user.id, "np-302", queue=orchestrator.queue)
    fake_nowpayments.script("np-302", unavailable(), "waiting")
    now = datetime.now(UTC)

    assert await orchestrator.monitoring.process_payment("np-302", now=now) == "retry_scheduled"

    delay = orchestrator.config.monitoring.retry_delay_sec
    assert await orchestrator.queue.due(50, now) == []
    assert await orchestrator.queue.due(50, now + timedelta(seconds=delay)) == ["np-302"]


@pytest.mark.asyncio
async def test_failure_clears_on_success(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """A network failure record disappears once the payment finishes"""
    user = await make_user()
    await make_topup(user.id, "np-303", amount="8.00", queue=orchestrator.queue)
    fake_nowpayments.script("np-303", unavailable(), "finished")

    assert await orchestrator.monitoring.process_payment("np-303") == "retry_scheduled"
    assert (await orchestrator.failures.get("np-303")).category == FailureCategory.NETWORK

    assert await orchestrator.monitoring.process_payment("np-303") == "updated"
    assert await orchestrator.failures.get("np-303") is None

    async with session_maker() as session:
        row = await get_ledger_row(session, "np-303")
        assert row.retry_count == 0
        assert row.monitoring_status == MonitoringStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_unchanged_poll_resets_retry_count(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """A successful poll with no status change still clears consecutive failures"""
    user = await make_user()
    await make_topup(user.id, "np-304", queue=orchestrator.queue)
    fake_nowpayments.script("np-304", unavailable(), "pending")

    await orchestrator.monitoring.process_payment("np-304")
    assert await orchestrator.monitoring.process_payment("np-304") == "unchanged"

    async with session_maker() as session:
        row = await get_ledger_row(session, "np-304")
        assert row.retry_count == 0
        assert row.monitoring_status == MonitoringStatus.MONITORING.value


@pytest.mark.asyncio
async def test_tick_falls_back_to_ledger_when_queue_down(orchestrator, fake_redis, fake_nowpayments, make_user, make_topup):
    """Redis unreachable: due work is read from the ledger"""
    user = await make_user()
    await make_topup(user.id, "np-305")
    fake_nowpayments.script("np-305", "confirming")
    fake_redis.fail = True

    summary = await orchestrator.monitoring.run_tick()

    assert summary == {"processed": 1, "errors": 0}
    assert fake_nowpayments.calls == ["np-305"]


@pytest.mark.asyncio
async def test_tick_rehydrates_expired_queue(orchestrator, fake_nowpayments, make_user, make_topup):
    """An expired work list is rebuilt from the ledger on the next tick"""
    user = await make_user()
    await make_topup(user.id, "np-306")
    fake_nowpayments.script("np-306", "waiting")

    summary = await orchestrator.monitoring.run_tick()

    assert summary["processed"] == 1
    assert await orchestrator.queue.contains("np-306")


@pytest.mark.asyncio
async def test_initialize_rehydrates_recent_active_rows(orchestrator, make_user, make_topup):
    """Only active rows inside the lookback window are queued at startup"""
    user = await make_user()
    await make_topup(user.id, "np-307")
    await make_topup(user.id, "np-308", created_at=datetime.now(UTC) - timedelta(days=10))

    added = await orchestrator.monitoring.initialize()

    assert added == 1
    assert await orchestrator.queue.contains("np-307")
    assert not await orchestrator.queue.contains("np-308")


@pytest.mark.asyncio
async def test_stopped_monitoring_skips(orchestrator, fake_nowpayments, make_user, make_topup):
    user = await make_user()
    await make_topup(user.id, "np-309", queue=orchestrator.queue)

    await orchestrator.monitoring.stop()
    assert await orchestrator.monitoring.run_tick() == {"skipped": "stopped"}
    assert (await orchestrator.monitoring.health_check())["status"] == "stopped"

    fake_nowpayments.script("np-309", "waiting")
    forced = await orchestrator.monitoring.trigger_payment_check()
    assert forced["processed"] == 1

    await orchestrator.monitoring.start()
    assert (await orchestrator.monitoring.health_check())["status"] == "healthy"


@pytest.mark.asyncio
async def test_unconfigured_provider_skips(orchestrator, fake_nowpayments):
    fake_nowpayments.enabled = False
    assert await orchestrator.monitoring.run_tick() == {"skipped": "provider_not_configured"}


@pytest.mark.asyncio
async def test_manual_retry_after_monitoring_failed(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """retry_failed_payment resets the counter, closes the task and requeues"""
    user = await make_user()
    await make_topup(user.id, "np-310", queue=orchestrator.queue)
    fake_nowpayments.script("np-310", *[unavailable() for _ in range(4)])
    for _ in range(4):
        await orchestrator.monitoring.process_payment("np-310")

    assert await orchestrator.monitoring.retry_failed_payment("np-310", admin="ops")

    assert await orchestrator.queue.contains("np-310")
    assert await orchestrator.failures.get("np-310") is None
    async with session_maker() as session:
        row = await get_ledger_row(session, "np-310")
        assert row.retry_count == 0
        assert row.monitoring_status == MonitoringStatus.MONITORING.value
        assert await AdminTaskService.list_open(session) == []


@pytest.mark.asyncio
async def test_manual_retry_refused_for_provider_failure(orchestrator, fake_nowpayments, make_user, make_topup):
    """Expired payments are not put back under monitoring"""
    user = await make_user()
    await make_topup(user.id, "np-311", queue=orchestrator.queue)
    fake_nowpayments.script("np-311", "expired")
    await orchestrator.monitoring.process_payment("np-311")

    assert await orchestrator.monitoring.retry_failed_payment("np-311") is False
    assert not await orchestrator.queue.contains("np-311")


@pytest.mark.asyncio
async def test_reset_metrics(orchestrator, fake_nowpayments, make_user, make_topup):
    user = await make_user()
    await make_topup(user.id, "np-312", queue=orchestrator.queue)
    fake_nowpayments.script("np-312", "waiting")
    await orchestrator.monitoring.run_tick()

    orchestrator.monitoring.reset_metrics()

    metrics = orchestrator.monitoring.get_metrics()
    assert metrics["total_payments_monitored"] == 0
    assert metrics["last_run_time"] is None


@pytest.mark.asyncio
async def test_rejected_status_request_parks_without_retry(orchestrator, session_maker, fake_nowpayments, make_user, make_topup):
    """A non-transient provider error is not a network failure and is not retried"""
    user = await make_user()
    await make_topup(user.id, "np-313", queue=orchestrator.queue)
    fake_nowpayments.script("np-313", ProviderError("401 invalid api key", provider="nowpayments", status_code=401))

    assert await orchestrator.monitoring.process_payment("np-313") == "monitoring_failed"

    assert len(fake_nowpayments.calls) == 1
    assert not await orchestrator.queue.contains("np-313")
    failure = await orchestrator.failures.get("np-313")
    assert failure.category == FailureCategory.PROVIDER_REJECTED
    async with session_maker() as session:
        row = await get_ledger_row(session, "np-313")
        assert row.retry_count == 0
        assert row.monitoring_status == MonitoringStatus.FAILED.value
        tasks = await AdminTaskService.list_open(session)
        assert [task.category for task in tasks] == [AdminTaskCategory.PAYMENT_MONITORING_FAILED.value]

    # parked for an admin, who can put it back under monitoring
    assert await orchestrator.monitoring.retry_failed_payment("np-313", admin="ops")
    assert await orchestrator.queue.contains("np-313")
