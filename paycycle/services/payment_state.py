# coding: utf-8
"""
Payment state machine

The only code that writes Payment.status. The polling loop, the NOWPayments
IPN handler and the Stripe webhook all go through apply_status_transition, so
push and pull observations converge on the same rules:

- only forward progress is applied (see PaymentStatus.progress);
- terminal states never change;
- regressions and unknown statuses are logged and ignored;
- the linked ledger row mirrors payment_status/monitoring_status/retry_count
  in the same flush.
"""
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycycle.core.enums import MonitoringStatus, PaymentStatus
from paycycle.database.models import CreditTransaction, Payment


@dataclass
class TransitionResult:
    """What the state machine did with one observed status"""
    applied: bool
    previous: PaymentStatus
    current: PaymentStatus
    observed: Optional[str] = None
    ignored_reason: Optional[str] = None  # unchanged, regression, terminal, unknown_status

    @property
    def reached_terminal(self) -> bool:
        return self.applied and self.current.is_terminal


def parse_status(raw: Any) -> Optional[PaymentStatus]:
    """Map a provider status string to PaymentStatus (None if unknown)"""
    if isinstance(raw, PaymentStatus):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        return PaymentStatus(raw.strip().lower())
    except ValueError:
        return None


def is_forward_transition(current: PaymentStatus, new: PaymentStatus) -> bool:
    if current.is_terminal:
        return False
    return new.progress > current.progress


def monitoring_status_for(status: PaymentStatus) -> MonitoringStatus:
    """
    Ledger monitoring status for a payment status

    finished stays MONITORING until the allocation service marks the row
    COMPLETED, so a crash between the two is picked up again on restart.
    """
    if status in PaymentStatus.failure_states():
        return MonitoringStatus.FAILED
    return MonitoringStatus.MONITORING


async def get_payment(
    session: AsyncSession,
    provider: str,
    provider_payment_id: str,
    for_update: bool = False,
) -> Optional[Payment]:
    stmt = select(Payment).where(
        Payment.provider == provider,
        Payment.provider_payment_id == str(provider_payment_id),
    )
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_ledger_row(
    session: AsyncSession,
    provider_payment_id: str,
    provider: Optional[str] = None,
    for_update: bool = False,
) -> Optional[CreditTransaction]:
    """The ledger row that tracks a provider payment, if any"""
    stmt = select(CreditTransaction).where(
        CreditTransaction.payment_id == str(provider_payment_id)
    )
    if provider:
        stmt = stmt.where(CreditTransaction.payment_provider == provider)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt.order_by(CreditTransaction.id).limit(1))
    return result.scalar_one_or_none()


async def apply_status_transition(
    session: AsyncSession,
    payment: Payment,
    observed_status: Any,
    source: str,
    provider_data: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    """
    Apply one observed provider status to a payment

    Args:
        session: Database session (flushed, not committed)
        payment: Payment to update
        observed_status: Status string or PaymentStatus from the provider
        source: "poll", "ipn", "stripe_webhook", "manual"
        provider_data: Raw provider payload stored alongside the status

    Returns:
        TransitionResult; applied=False means nothing was written
    """
    previous = PaymentStatus(payment.status)
    new = parse_status(observed_status)

    if new is None:
        logger.warning(
            f"⚠️ Unknown status '{observed_status}' for payment {payment.provider_payment_id} "
            f"from {source}, ignored"
        )
        return TransitionResult(False, previous, previous, str(observed_status), "unknown_status")

    if new == previous:
        return TransitionResult(False, previous, previous, new.value, "unchanged")

    if not is_forward_transition(previous, new):
        reason = "terminal" if previous.is_terminal else "regression"
        logger.warning(
            f"⚠️ Ignoring {reason} for payment {payment.provider_payment_id}: "
            f"{previous.value} → {new.value} (source={source})"
        )
        return TransitionResult(False, previous, previous, new.value, reason)

    now = datetime.now(UTC)
    payment.status = new.value
    payment.updated_at = now
    if provider_data:
        payment.provider_data = {**(payment.provider_data or {}), **provider_data}

    row = await get_ledger_row(session, payment.provider_payment_id, payment.provider)
    if row is not None and not row.is_settled:
        row.payment_status = new.value
        row.monitoring_status = monitoring_status_for(new).value
        row.retry_count = 0
        row.last_monitored_at = now
        extra = dict(row.extra_data or {})
        extra["lastMonitoredAt"] = now.isoformat()
        extra["lastStatusSource"] = source
        if provider_data and provider_data.get("actually_paid") is not None:
            extra["actuallyPaid"] = str(provider_data["actually_paid"])
        if new in PaymentStatus.failure_states():
            extra["failureStatus"] = new.value
            extra["failedAt"] = now.isoformat()
        row.extra_data = extra

    await session.flush()

    logger.info(
        f"📊 Payment {payment.provider_payment_id} ({payment.provider}): "
        f"{previous.value} → {new.value} via {source}"
    )
    return TransitionResult(True, previous, new, new.value)


async def touch_ledger_row(session: AsyncSession, payment: Payment) -> None:
    """
    Record a successful poll that observed no change

    Resets the consecutive-failure counter and promotes a pending row to
    monitoring. Flushes only.
    """
    row = await get_ledger_row(session, payment.provider_payment_id, payment.provider)
    if row is None or row.is_settled:
        return
    row.last_monitored_at = datetime.now(UTC)
    row.retry_count = 0
    if row.monitoring_status == MonitoringStatus.PENDING.value:
        row.monitoring_status = MonitoringStatus.MONITORING.value
    await session.flush()
