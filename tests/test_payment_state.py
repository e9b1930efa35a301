"""
Tests for the payment state machine and the event funnel
"""

import pytest
from decimal import Decimal

from paycycle.core.enums import (
    AdminTaskCategory,
    FailureCategory,
    MonitoringStatus,
    PaymentProvider,
    PaymentStatus,
)
from paycycle.database.models import Payment
from paycycle.services.admin_task_service import AdminTaskService
from paycycle.services.credit_service import CreditService
from paycycle.services.payment_state import (
    apply_status_transition,
    get_ledger_row,
    is_forward_transition,
    monitoring_status_for,
    parse_status,
)

NOWPAYMENTS = PaymentProvider.NOWPAYMENTS.value


def test_parse_status():
    """Provider strings map onto PaymentStatus, unknown ones to None"""
    assert parse_status("finished") == PaymentStatus.FINISHED
    assert parse_status(" Confirming ") == PaymentStatus.CONFIRMING
    assert parse_status(PaymentStatus.EXPIRED) == PaymentStatus.EXPIRED
    assert parse_status("teleported") is None
    assert parse_status(None) is None


def test_forward_transitions():
    """Only strictly increasing progress from a non-terminal state is allowed"""
    assert is_forward_transition(PaymentStatus.PENDING, PaymentStatus.WAITING)
    assert is_forward_transition(PaymentStatus.CONFIRMING, PaymentStatus.FINISHED)
    assert is_forward_transition(PaymentStatus.PARTIALLY_PAID, PaymentStatus.SENDING)
    assert is_forward_transition(PaymentStatus.WAITING, PaymentStatus.EXPIRED)

    assert not is_forward_transition(PaymentStatus.CONFIRMING, PaymentStatus.WAITING)
    assert not is_forward_transition(PaymentStatus.CONFIRMED, PaymentStatus.PARTIALLY_PAID)
    assert not is_forward_transition(PaymentStatus.FINISHED, PaymentStatus.REFUNDED)
    assert not is_forward_transition(PaymentStatus.FAILED, PaymentStatus.FINISHED)


def test_monitoring_status_mapping():
    """Failure states park the ledger row; everything else keeps monitoring"""
    assert monitoring_status_for(PaymentStatus.EXPIRED) == MonitoringStatus.FAILED
    assert monitoring_status_for(PaymentStatus.FINISHED) == MonitoringStatus.MONITORING
    assert monitoring_status_for(PaymentStatus.CONFIRMING) == MonitoringStatus.MONITORING


@pytest.mark.asyncio
async def test_transition_mirrors_ledger_row(session_maker, make_user, make_topup):
    """Payment status and the linked ledger row change in the same flush"""
    user = await make_user()
    await make_topup(user.id, "np-200")

    async with session_maker() as session:
        payment = await session.get(Payment, 1)
        result = await apply_status_transition(
            session, payment, "confirming", "poll", provider_data={"actually_paid": "0.001"}
        )
        await session.commit()

        assert result.applied
        assert result.previous == PaymentStatus.PENDING
        assert result.current == PaymentStatus.CONFIRMING

        row = await get_ledger_row(session, "np-200")
        assert row.payment_status == "confirming"
        assert row.monitoring_status == MonitoringStatus.MONITORING.value
        assert row.retry_count == 0
        assert row.extra_data["actuallyPaid"] == "0.001"
        assert row.extra_data["lastStatusSource"] == "poll"


@pytest.mark.asyncio
async def test_unknown_status_is_ignored(session_maker, make_user, make_topup):
    user = await make_user()
    await make_topup(user.id, "np-201")

    async with session_maker() as session:
        payment = await session.get(Payment, 1)
        result = await apply_status_transition(session, payment, "teleported", "ipn")

        assert not result.applied
        assert result.ignored_reason == "unknown_status"
        assert payment.status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_no_regression_sequence(orchestrator, session_maker, make_user, make_topup):
    """[pending, confirming, finished, pending] ends finished and credits once"""
    user = await make_user()
    await make_topup(user.id, "np-202", amount="12.00")

    applied = []
    for status in ("pending", "confirming", "finished", "pending"):
        outcome = await orchestrator.events.handle_status(NOWPAYMENTS, "np-202", status, source="poll")
        applied.append(outcome.transition.applied)

    assert applied == [False, True, True, False]

    async with session_maker() as session:
        payment = await session.get(Payment, 1)
        assert payment.status == PaymentStatus.FINISHED.value
        assert await CreditService.get_balance(session, user.id) == Decimal("12.00")


@pytest.mark.asyncio
async def test_ipn_and_poll_converge(orchestrator, session_maker, make_user, make_topup):
    """A late poll cannot undo what an IPN already applied"""
    user = await make_user()
    await make_topup(user.id, "np-203", amount="5.00")

    ipn = await orchestrator.events.handle_status(NOWPAYMENTS, "np-203", "finished", source="ipn")
    poll = await orchestrator.events.handle_status(NOWPAYMENTS, "np-203", "confirming", source="poll")

    assert ipn.transition.applied
    assert ipn.allocation.credited
    assert not poll.transition.applied
    assert poll.transition.ignored_reason == "terminal"

    async with session_maker() as session:
        assert await CreditService.get_balance(session, user.id) == Decimal("5.00")


@pytest.mark.asyncio
async def test_unknown_payment_not_found(orchestrator):
    outcome = await orchestrator.events.handle_status(NOWPAYMENTS, "np-missing", "finished", source="ipn")
    assert outcome.found is False


@pytest.mark.asyncio
async def test_expired_payment_records_failure(orchestrator, session_maker, make_user, make_topup):
    """A provider-declared failure is recorded as non-retryable and dequeued"""
    user = await make_user()
    await make_topup(user.id, "np-204", queue=orchestrator.queue)

    await orchestrator.events.handle_status(NOWPAYMENTS, "np-204", "expired", source="poll")

    record = await orchestrator.failures.get("np-204")
    assert record.category == FailureCategory.EXPIRED
    assert record.can_retry is False
    assert not await orchestrator.queue.contains("np-204")

    async with session_maker() as session:
        row = await get_ledger_row(session, "np-204")
        assert row.monitoring_status == MonitoringStatus.FAILED.value
        assert row.extra_data["failureStatus"] == "expired"


@pytest.mark.asyncio
async def test_rejected_allocation_is_parked(orchestrator, session_maker, make_user, make_topup):
    """Underpaid finished payment: failure recorded, row parked, admin task opened"""
    user = await make_user()
    await make_topup(user.id, "np-205", amount="40.00", queue=orchestrator.queue)

    outcome = await orchestrator.events.handle_status(
        NOWPAYMENTS,
        "np-205",
        "finished",
        provider_data={"actually_paid": "0.25", "pay_amount": "1.0"},
        source="poll",
    )

    assert outcome.allocation is not None and not outcome.allocation.credited
    record = await orchestrator.failures.get("np-205")
    assert record.category == FailureCategory.ALLOCATION_FAILED
    assert not await orchestrator.queue.contains("np-205")

    async with session_maker() as session:
        row = await get_ledger_row(session, "np-205")
        assert row.monitoring_status == MonitoringStatus.FAILED.value
        assert "underpaid" in row.extra_data["allocationRejected"]
        tasks = await AdminTaskService.list_open(
            session, category=AdminTaskCategory.PAYMENT_ALLOCATION_REJECTED
        )
        assert [task.entity_key for task in tasks] == ["payment:np-205"]
