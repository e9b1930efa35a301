# coding: utf-8
"""
Payment event processor

Single funnel for every observed provider status: the monitoring poll, the
NOWPayments IPN and the Stripe webhook. Applies the state machine, commits,
then runs the side effects of the resulting status:

- finished credit top-up   → credit allocation, queue removal, failure resolved
- finished renewal charge  → subscription period advanced
- failed/expired/refunded  → failure recorded, queue removal, renewal escalation
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.cache_config import CacheTTL
from paycycle.core.enums import (
    AdminTaskCategory,
    AdminTaskPriority,
    AllocationOutcome,
    FailureCategory,
    MonitoringStatus,
    PaymentPurpose,
    PaymentStatus,
)
from paycycle.services.admin_task_service import AdminTaskService, payment_entity
from paycycle.services.credit_allocation_service import AllocationResult, CreditAllocationService
from paycycle.services.failure_registry import PaymentFailureRegistry
from paycycle.services.payment_state import (
    TransitionResult,
    apply_status_transition,
    get_ledger_row,
    get_payment,
    touch_ledger_row,
)
from paycycle.services.pending_payment_queue import PendingPaymentQueue


@dataclass
class PaymentEventOutcome:
    """What handle_status did"""
    found: bool
    transition: Optional[TransitionResult] = None
    status: Optional[PaymentStatus] = None
    allocation: Optional[AllocationResult] = None


class PaymentEventProcessor:
    """
    Converges push and pull status observations on the same rules
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        allocation: CreditAllocationService,
        queue: PendingPaymentQueue,
        failures: PaymentFailureRegistry,
        renewal=None,
    ):
        self._session_maker = session_maker
        self._allocation = allocation
        self._queue = queue
        self._failures = failures
        # SubscriptionRenewalService; attached by build_orchestrator
        self.renewal = renewal

    async def handle_status(
        self,
        provider: str,
        provider_payment_id: str,
        raw_status: Any,
        provider_data: Optional[Dict[str, Any]] = None,
        source: str = "poll",
    ) -> PaymentEventOutcome:
        """
        Apply one observed status and run its side effects

        Args:
            provider: "nowpayments" or "stripe"
            provider_payment_id: Provider-side payment ID
            raw_status: Status string as reported (or a PaymentStatus)
            provider_data: Raw provider payload
            source: "poll", "ipn", "stripe_webhook", "manual"

        Returns:
            PaymentEventOutcome (found=False when no such payment exists)
        """
        async with self._session_maker() as session:
            payment = await get_payment(session, provider, provider_payment_id, for_update=True)
            if payment is None:
                logger.warning(f"⚠️ Status '{raw_status}' for unknown {provider} payment {provider_payment_id}")
                return PaymentEventOutcome(found=False)

            transition = await apply_status_transition(
                session, payment, raw_status, source, provider_data=provider_data
            )
            if not transition.applied and source == "poll":
                await touch_ledger_row(session, payment)
            await session.commit()

            status = PaymentStatus(payment.status)
            purpose = payment.purpose
            payment_pk = payment.id

        outcome = PaymentEventOutcome(found=True, transition=transition, status=status)

        if status == PaymentStatus.FINISHED:
            if purpose == PaymentPurpose.CREDIT_TOPUP.value:
                outcome.allocation = await self._allocate(provider_payment_id)
            elif purpose == PaymentPurpose.SUBSCRIPTION_RENEWAL.value and self.renewal is not None:
                await self.renewal.complete_card_renewal(payment_pk)
                await self._failures.resolve(provider_payment_id)
            else:
                await self._queue.remove(provider_payment_id)
                await self._failures.resolve(provider_payment_id)

        elif status in PaymentStatus.failure_states():
            if transition.applied:
                await self._failures.record(
                    provider_payment_id,
                    FailureCategory.from_payment_status(status),
                    f"Provider reported {status.value}",
                    {"provider": provider, "source": source},
                )
            await self._queue.remove(provider_payment_id)
            if purpose == PaymentPurpose.SUBSCRIPTION_RENEWAL.value and self.renewal is not None:
                await self.renewal.fail_card_renewal(payment_pk)

        return outcome

    async def _allocate(self, provider_payment_id: str) -> Optional[AllocationResult]:
        try:
            result = await self._allocation.allocate(provider_payment_id)
        except Exception as e:
            # Entry stays queued; the next tick re-offers the payment
            logger.exception(f"❌ Allocation error for {provider_payment_id}: {e}")
            await self._failures.record(
                provider_payment_id, FailureCategory.ALLOCATION_FAILED, f"Allocation error: {e}"
            )
            return None

        if result.credited:
            await self._queue.remove(provider_payment_id)
            await self._failures.resolve(provider_payment_id)
            return result

        if result.outcome == AllocationOutcome.ALREADY_ALLOCATED:
            # Another worker is mid-allocation; look again once its marker lapses
            retry_at = datetime.now(UTC) + timedelta(seconds=CacheTTL.ALLOCATION_IN_FLIGHT)
            await self._queue.push(provider_payment_id, retry_at)
            logger.info(f"Allocation of {provider_payment_id} in flight elsewhere, rechecking at {retry_at.isoformat()}")
            return result

        if result.outcome == AllocationOutcome.REJECTED:
            await self._failures.record(
                provider_payment_id,
                FailureCategory.ALLOCATION_FAILED,
                result.reason or "allocation rejected",
            )
            await self._park_rejected(provider_payment_id, result.reason or "allocation rejected")
            await self._queue.remove(provider_payment_id)
        return result

    async def _park_rejected(self, provider_payment_id: str, reason: str) -> None:
        """Stop monitoring a rejected payment and hand it to support"""
        async with self._session_maker() as session:
            row = await get_ledger_row(session, provider_payment_id, for_update=True)
            user_id = None
            if row is not None and not row.is_settled:
                user_id = row.user_id
                row.monitoring_status = MonitoringStatus.FAILED.value
                row.extra_data = {
                    **(row.extra_data or {}),
                    "allocationRejected": reason,
                    "allocationRejectedAt": datetime.now(UTC).isoformat(),
                }

            await AdminTaskService.ensure_task(
                session,
                AdminTaskCategory.PAYMENT_ALLOCATION_REJECTED,
                payment_entity(provider_payment_id),
                title=f"Payment {provider_payment_id} finished but was not credited",
                task_type="payment",
                priority=AdminTaskPriority.HIGH,
                notes=reason,
                user_id=user_id,
            )
            await session.commit()
