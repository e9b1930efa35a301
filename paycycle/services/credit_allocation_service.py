# coding: utf-8
"""
Credit Allocation Service

Turns a finished crypto payment into ledger credit exactly once.

Two independent guards:
1. ephemeral Redis markers: "done" (24 h) and "in flight" (SET NX, 1 min),
   which absorb same-process races and repeated queue entries cheaply;
2. the durable paymentCompleted flag on the ledger row, re-read under a row
   lock inside the allocating transaction, which survives Redis loss and
   cross-process duplicates.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, UTC
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.cache_config import CacheTTL
from config.orchestrator import AllocationConfig, get_config
from paycycle.cache.cache_keys import CacheKeys
from paycycle.cache.redis_manager import RedisManager
from paycycle.core.enums import (
    AllocationOutcome,
    CreditTransactionType,
    MonitoringStatus,
    PaymentProvider,
    PaymentStatus,
)
from paycycle.core.exceptions import CoordinationStoreError
from paycycle.database.models import CreditTransaction, Payment
from paycycle.services.credit_service import CreditService, to_money, ZERO
from paycycle.services.payment_state import get_ledger_row, get_payment


@dataclass
class AllocationResult:
    """Outcome of allocate()"""
    outcome: AllocationOutcome
    payment_id: str
    transaction_id: Optional[int] = None
    amount: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    reason: Optional[str] = None
    # False when another worker holds the in-flight marker and the credit
    # is not known to exist yet
    confirmed: bool = True

    @property
    def credited(self) -> bool:
        """True when the payment's credit exists in the ledger (now or before)"""
        return self.confirmed and self.outcome in (
            AllocationOutcome.ALLOCATED, AllocationOutcome.ALREADY_ALLOCATED
        )


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def resolve_paid_usd(payment: Payment, epsilon: Decimal) -> Decimal:
    """
    USD value actually received for a payment

    Uses outcome_amount when the provider settled in USD, otherwise scales
    the requested amount by actually_paid / pay_amount. Without any paid
    figures a finished payment counts as paid in full.
    """
    requested = to_money(payment.amount)
    data = payment.provider_data or {}

    outcome_amount = _decimal(data.get("outcome_amount"))
    outcome_currency = str(data.get("outcome_currency") or "").lower()
    if outcome_amount is not None and outcome_currency in ("usd", "usdt", "usdc"):
        return outcome_amount

    actually_paid = _decimal(data.get("actually_paid"))
    pay_amount = _decimal(data.get("pay_amount"))
    if actually_paid is not None and pay_amount and pay_amount > epsilon:
        ratio = actually_paid / pay_amount
        return requested * ratio

    return requested


class CreditAllocationService:
    """
    allocate(payment_id) -> allocated | already_allocated | rejected
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        redis: RedisManager,
        config: Optional[AllocationConfig] = None,
        provider: str = PaymentProvider.NOWPAYMENTS.value,
    ):
        self._session_maker = session_maker
        self._redis = redis
        self._config = config or get_config().allocation
        self._provider = provider
        self._metrics = self._empty_metrics()

    @staticmethod
    def _empty_metrics() -> Dict[str, Any]:
        return {
            "total_allocations": 0,
            "total_credits_allocated": Decimal("0.00"),
            "duplicates_prevented": 0,
            "rejected_allocations": 0,
            "failed_allocations": 0,
            "last_allocation_time": None,
            "processing_ms_total": 0.0,
        }

    # ------------------------------------------------------------------
    # Fast-path markers
    # ------------------------------------------------------------------

    async def _take_in_flight_marker(self, payment_id: str) -> Optional[str]:
        """
        Returns a token when we own the in-flight marker, "" when Redis is
        unavailable (fall through to the durable guard), None when someone
        else is allocating.
        """
        token = uuid.uuid4().hex
        try:
            taken = await self._redis.set_if_absent(
                CacheKeys.allocation_in_flight(payment_id), token, CacheTTL.ALLOCATION_IN_FLIGHT
            )
        except CoordinationStoreError as e:
            logger.warning(f"Allocation marker unavailable for {payment_id}, using durable guard only: {e}")
            return ""
        return token if taken else None

    async def _drop_in_flight_marker(self, payment_id: str, token: str) -> None:
        if not token:
            return
        try:
            await self._redis.delete_if_equals(CacheKeys.allocation_in_flight(payment_id), token)
        except CoordinationStoreError as e:
            logger.warning(f"Could not clear allocation marker for {payment_id}: {e}")

    async def _mark_completed(self, payment_id: str, transaction_id: int) -> None:
        await self._redis.set(
            CacheKeys.allocation_completed(payment_id),
            {"transaction_id": transaction_id, "completed_at": datetime.now(UTC).isoformat()},
            ttl=CacheTTL.ALLOCATION_COMPLETED,
        )

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    async def allocate(self, payment_id: str) -> AllocationResult:
        """
        Credit a finished payment exactly once

        Args:
            payment_id: Provider payment ID

        Returns:
            AllocationResult. Never raises for duplicates; database errors
            propagate after the in-flight marker is released.
        """
        started = time.perf_counter()

        if await self._redis.exists(CacheKeys.allocation_completed(payment_id)):
            return self._duplicate(payment_id, "completed marker present")

        token = await self._take_in_flight_marker(payment_id)
        if token is None:
            return self._duplicate(payment_id, "allocation in progress elsewhere", confirmed=False)

        try:
            async with self._session_maker() as session:
                result = await self._allocate_in_session(session, payment_id)
        except Exception:
            self._metrics["failed_allocations"] += 1
            logger.exception(f"❌ Credit allocation failed for payment {payment_id}")
            raise
        finally:
            await self._drop_in_flight_marker(payment_id, token)

        if result.outcome == AllocationOutcome.ALLOCATED:
            await self._mark_completed(payment_id, result.transaction_id)
            self._metrics["total_allocations"] += 1
            self._metrics["total_credits_allocated"] += result.amount
            self._metrics["last_allocation_time"] = datetime.now(UTC)
            self._metrics["processing_ms_total"] += (time.perf_counter() - started) * 1000
        elif result.outcome == AllocationOutcome.ALREADY_ALLOCATED:
            await self._mark_completed(payment_id, result.transaction_id)
            self._metrics["duplicates_prevented"] += 1
        else:
            self._metrics["rejected_allocations"] += 1

        return result

    def _duplicate(self, payment_id: str, why: str, confirmed: bool = True) -> AllocationResult:
        self._metrics["duplicates_prevented"] += 1
        logger.info(f"Duplicate allocation prevented for payment {payment_id} ({why})")
        return AllocationResult(
            AllocationOutcome.ALREADY_ALLOCATED, payment_id, reason=why, confirmed=confirmed
        )

    def _reject(self, payment_id: str, reason: str) -> AllocationResult:
        logger.warning(f"⚠️ Allocation rejected for payment {payment_id}: {reason}")
        return AllocationResult(AllocationOutcome.REJECTED, payment_id, reason=reason)

    async def _allocate_in_session(self, session: AsyncSession, payment_id: str) -> AllocationResult:
        row = await get_ledger_row(session, payment_id, self._provider, for_update=True)
        if row is None:
            return self._reject(payment_id, "no ledger row for payment")

        if (row.extra_data or {}).get("paymentCompleted") is True:
            return AllocationResult(
                AllocationOutcome.ALREADY_ALLOCATED,
                payment_id,
                transaction_id=row.id,
                amount=to_money(row.amount),
                balance_after=row.balance_after,
                reason="ledger row already completed",
            )

        payment = await get_payment(session, self._provider, payment_id)
        if payment is None:
            return self._reject(payment_id, "payment record not found")

        if payment.status != PaymentStatus.FINISHED.value:
            return self._reject(payment_id, f"payment status is {payment.status}, not finished")

        requested = to_money(payment.amount)
        paid = resolve_paid_usd(payment, self._config.full_payment_epsilon)
        if paid + self._config.full_payment_epsilon < requested:
            return self._reject(
                payment_id, f"underpaid: paid {paid:.2f} USD of {requested} USD requested"
            )

        credit = to_money(requested * self._config.credit_rate)
        if credit <= ZERO:
            return self._reject(payment_id, "credit amount is not positive")
        if credit > self._config.max_allocation:
            return self._reject(payment_id, f"credit {credit} exceeds limit {self._config.max_allocation}")

        settled = await self._settle_row(
            session,
            row,
            payment,
            credit,
            {
                "requestedUsd": str(requested),
                "paidUsd": str(to_money(paid)),
                "paidRatio": str((paid / requested).quantize(Decimal("0.0001"))) if requested else "1",
                "creditAllocationRate": str(self._config.credit_rate),
                "allocationSource": "payment_monitoring",
            },
        )
        await session.commit()

        logger.info(
            f"✅ Credits allocated: payment={payment_id}, user={row.user_id}, "
            f"amount={credit}, balance {settled.balance_before} → {settled.balance_after}"
        )
        return AllocationResult(
            AllocationOutcome.ALLOCATED,
            payment_id,
            transaction_id=settled.id,
            amount=credit,
            balance_after=settled.balance_after,
        )

    async def _settle_row(
        self,
        session: AsyncSession,
        row: CreditTransaction,
        payment: Optional[Payment],
        credit: Decimal,
        details: Dict[str, Any],
    ) -> CreditTransaction:
        """
        Fill the balance fields of an intent row

        created_at moves to the settlement time so the row sits at the end
        of the user's (created_at, id) order, where its balance_before was
        computed. The original creation time is kept in metadata.
        """
        await CreditService.lock_user_balance(session, row.user_id)
        balance_before = await CreditService.get_balance(session, row.user_id)
        now = datetime.now(UTC)

        row.type = CreditTransactionType.DEPOSIT.value
        row.amount = credit
        row.balance_before = balance_before
        row.balance_after = balance_before + credit
        row.payment_status = PaymentStatus.FINISHED.value
        row.monitoring_status = MonitoringStatus.COMPLETED.value
        row.last_monitored_at = now
        row.extra_data = {
            **(row.extra_data or {}),
            **details,
            "paymentCompleted": True,
            "completedAt": now.isoformat(),
            "originalCreatedAt": row.created_at.isoformat() if row.created_at else None,
        }
        row.created_at = now

        if payment is not None:
            payment.credit_transaction_id = row.id

        await session.flush()
        return row

    async def manual_allocation(
        self,
        payment_id: str,
        credit_amount: Any,
        admin: str,
        reason: str,
    ) -> AllocationResult:
        """
        Admin-forced allocation (e.g. an accepted underpayment)

        Skips the status and underpayment checks but keeps both idempotency
        guards: a payment that was already credited is never credited again.
        """
        credit = to_money(credit_amount)
        if credit <= ZERO:
            return self._reject(payment_id, "invalid credit amount")
        if credit > self._config.max_allocation:
            return self._reject(payment_id, f"credit {credit} exceeds limit {self._config.max_allocation}")

        if await self._redis.exists(CacheKeys.allocation_completed(payment_id)):
            return self._duplicate(payment_id, "completed marker present")

        token = await self._take_in_flight_marker(payment_id)
        if token is None:
            return self._duplicate(payment_id, "allocation in progress elsewhere", confirmed=False)

        try:
            async with self._session_maker() as session:
                row = await get_ledger_row(session, payment_id, self._provider, for_update=True)
                if row is None:
                    return self._reject(payment_id, "no ledger row for payment")
                if (row.extra_data or {}).get("paymentCompleted") is True:
                    await self._mark_completed(payment_id, row.id)
                    return self._duplicate(payment_id, "ledger row already completed")

                payment = await get_payment(session, self._provider, payment_id)
                settled = await self._settle_row(
                    session,
                    row,
                    payment,
                    credit,
                    {"allocationSource": "manual", "allocatedBy": admin, "manualReason": reason},
                )
                await session.commit()
        finally:
            await self._drop_in_flight_marker(payment_id, token)

        await self._mark_completed(payment_id, settled.id)
        self._metrics["total_allocations"] += 1
        self._metrics["total_credits_allocated"] += credit
        self._metrics["last_allocation_time"] = datetime.now(UTC)

        logger.info(f"✅ Manual allocation by {admin}: payment={payment_id}, amount={credit}, reason={reason}")
        return AllocationResult(
            AllocationOutcome.ALLOCATED,
            payment_id,
            transaction_id=settled.id,
            amount=credit,
            balance_after=settled.balance_after,
        )

    async def get_allocation_history(self, user_id: int, limit: int = 50) -> List[CreditTransaction]:
        """Settled payment deposits for a user, newest first"""
        async with self._session_maker() as session:
            stmt = (
                select(CreditTransaction)
                .where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.payment_id.is_not(None),
                    CreditTransaction.balance_after.is_not(None),
                )
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_pending_allocations(self, limit: int = 100) -> List[CreditTransaction]:
        """Ledger rows whose payment finished but which are not credited yet"""
        async with self._session_maker() as session:
            stmt = (
                select(CreditTransaction)
                .where(
                    CreditTransaction.payment_status == PaymentStatus.FINISHED.value,
                    CreditTransaction.balance_after.is_(None),
                )
                .order_by(CreditTransaction.created_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    def get_metrics(self) -> Dict[str, Any]:
        allocations = self._metrics["total_allocations"]
        return {
            "total_allocations": allocations,
            "total_credits_allocated": str(self._metrics["total_credits_allocated"]),
            "duplicates_prevented": self._metrics["duplicates_prevented"],
            "rejected_allocations": self._metrics["rejected_allocations"],
            "failed_allocations": self._metrics["failed_allocations"],
            "last_allocation_time": (
                self._metrics["last_allocation_time"].isoformat()
                if self._metrics["last_allocation_time"] else None
            ),
            "average_processing_ms": (
                round(self._metrics["processing_ms_total"] / allocations, 2) if allocations else 0.0
            ),
        }

    def reset_metrics(self) -> None:
        self._metrics = self._empty_metrics()
