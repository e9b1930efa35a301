# coding: utf-8
"""
Payment Monitoring Service

Polls NOWPayments for every payment in the pending queue until it reaches
a terminal status, funnelling each observation through the event processor.

Per tick:
1. take due entries from the queue (ledger fallback when Redis is down)
2. fetch provider status for each, one session per payment
3. transient failures back off exponentially up to PAYMENT_RETRY_ATTEMPTS,
   then the payment is parked as monitoring_failed for a human; requests
   the provider rejects outright are parked at once

The start/stop switch lives in Redis so an operator stopping monitoring
through the API also stops the worker.
"""
import time
from datetime import datetime, timedelta, UTC
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.orchestrator import MonitoringConfig, get_config
from paycycle.cache.cache_keys import CacheKeys
from paycycle.cache.redis_manager import RedisManager
from paycycle.core.enums import (
    AdminTaskCategory,
    AdminTaskPriority,
    AllocationOutcome,
    FailureCategory,
    MonitoringStatus,
    PaymentProvider,
)
from paycycle.core.exceptions import (
    CoordinationStoreError,
    ProviderError,
    ProviderNotConfiguredError,
    ProviderUnavailableError,
)
from paycycle.services.admin_task_service import AdminTaskService, payment_entity
from paycycle.services.failure_registry import PaymentFailureRegistry
from paycycle.services.payment_events import PaymentEventProcessor
from paycycle.services.payment_state import get_ledger_row
from paycycle.services.pending_payment_queue import (
    PendingPaymentQueue,
    fetch_active_payment_ids,
)


class PaymentMonitoringService:
    """
    Pull-side driver of the payment state machine
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        provider,
        queue: PendingPaymentQueue,
        failures: PaymentFailureRegistry,
        processor: PaymentEventProcessor,
        config: Optional[MonitoringConfig] = None,
        redis: Optional[RedisManager] = None,
    ):
        self._session_maker = session_maker
        self._redis = redis
        self._provider = provider
        self._queue = queue
        self._failures = failures
        self._processor = processor
        self.config = config or get_config().monitoring
        self.enabled = True
        self._metrics = self._empty_metrics()

    @staticmethod
    def _empty_metrics() -> Dict[str, Any]:
        return {
            "total_payments_monitored": 0,
            "successful_updates": 0,
            "failed_updates": 0,
            "credits_allocated": 0,
            "last_run_time": None,
            "total_processing_ms": 0.0,
            "ticks": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Rebuild the pending queue from the ledger"""
        async with self._session_maker() as session:
            added = await self._queue.rehydrate(session, self.config.rehydrate_lookback_days)
        logger.info(f"✅ Payment monitoring initialized ({added} payments queued)")
        return added

    async def start(self) -> bool:
        """
        Resume monitoring in every process sharing this Redis

        Returns:
            False when the switch could only be flipped locally
        """
        shared = await self._set_enabled(True)
        logger.info("▶️ Payment monitoring started")
        return shared

    async def stop(self) -> bool:
        """Pause monitoring in every process sharing this Redis"""
        shared = await self._set_enabled(False)
        logger.info("⏸️ Payment monitoring stopped")
        return shared

    async def _set_enabled(self, enabled: bool) -> bool:
        self.enabled = enabled
        if self._redis is None:
            return False
        try:
            await self._redis.set_value(CacheKeys.monitoring_switch(), "1" if enabled else "0")
        except CoordinationStoreError as e:
            logger.warning(f"⚠️ Monitoring switch not shared, only this process is affected: {e}")
            return False
        return True

    async def is_enabled(self) -> bool:
        """Shared switch when Redis holds one, this process's flag otherwise"""
        if self._redis is None:
            return self.enabled
        try:
            value = await self._redis.get_value(CacheKeys.monitoring_switch())
        except CoordinationStoreError:
            return self.enabled
        if value is not None:
            self.enabled = value == "1"
        return self.enabled

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _due_payment_ids(self, now: datetime) -> List[str]:
        due = await self._queue.due(self.config.batch_size, now)

        if due is None:
            logger.warning("⚠️ Pending queue unavailable, reading due payments from the ledger")
            async with self._session_maker() as session:
                return await fetch_active_payment_ids(
                    session,
                    lookback_days=self.config.rehydrate_lookback_days,
                    limit=self.config.batch_size,
                )

        if not due and await self._queue.exists() is False:
            async with self._session_maker() as session:
                added = await self._queue.rehydrate(session, self.config.rehydrate_lookback_days)
            if added:
                # Rehydrated entries are stamped with the wall clock
                due = await self._queue.due(self.config.batch_size, max(now, datetime.now(UTC))) or []

        return due

    async def run_tick(self, now: Optional[datetime] = None, force: bool = False) -> Dict[str, Any]:
        """
        Process one batch of due payments

        Args:
            now: Clock override (tests)
            force: Run even when monitoring is stopped

        Returns:
            Tick summary
        """
        if not force and not await self.is_enabled():
            logger.debug("Payment monitoring is stopped, tick skipped")
            return {"skipped": "stopped"}
        if not getattr(self._provider, "enabled", True):
            logger.warning("⚠️ Payment provider not configured, monitoring tick skipped")
            return {"skipped": "provider_not_configured"}

        started = time.perf_counter()
        moment = now or datetime.now(UTC)
        payment_ids = await self._due_payment_ids(moment)

        summary: Dict[str, int] = {"processed": 0, "errors": 0}
        for payment_id in payment_ids:
            try:
                await self.process_payment(payment_id, now=moment)
                summary["processed"] += 1
            except Exception:
                summary["errors"] += 1
                self._metrics["failed_updates"] += 1
                logger.exception(f"❌ Unexpected error monitoring payment {payment_id}")

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._metrics["ticks"] += 1
        self._metrics["total_processing_ms"] += elapsed_ms
        self._metrics["last_run_time"] = datetime.now(UTC)

        if payment_ids:
            logger.info(
                f"📊 Monitoring tick: {summary['processed']} processed, "
                f"{summary['errors']} errors in {elapsed_ms:.0f}ms"
            )
        return summary

    async def process_payment(self, payment_id: str, now: Optional[datetime] = None) -> str:
        """
        Poll one payment and apply what the provider reports

        Returns:
            "updated", "unchanged", "not_found", "retry_scheduled",
            "monitoring_failed" or "provider_not_configured"
        """
        self._metrics["total_payments_monitored"] += 1

        try:
            status = await self._provider.get_payment_status(payment_id)
        except ProviderNotConfiguredError:
            logger.warning(f"⚠️ Payment provider not configured, {payment_id} left queued")
            return "provider_not_configured"
        except ProviderError as e:
            self._metrics["failed_updates"] += 1
            return await self._handle_fetch_error(payment_id, e, now or datetime.now(UTC))

        outcome = await self._processor.handle_status(
            PaymentProvider.NOWPAYMENTS.value,
            payment_id,
            status.status,
            provider_data=status.raw,
            source="poll",
        )

        if not outcome.found:
            await self._queue.remove(payment_id)
            return "not_found"

        if outcome.allocation is not None and outcome.allocation.outcome == AllocationOutcome.ALLOCATED:
            self._metrics["credits_allocated"] += 1

        if outcome.transition and outcome.transition.applied:
            self._metrics["successful_updates"] += 1
            return "updated"
        return "unchanged"

    async def _handle_fetch_error(self, payment_id: str, error: ProviderError, now: datetime) -> str:
        """
        Back off or give up after a failed provider call

        Transient errors (ProviderUnavailableError) use the ledger row's
        retry_count as the durable counter: below the ceiling it is
        incremented and the entry requeued with exponential delay; at the
        ceiling the row is parked as failed and an admin task opened. Any
        other provider error (rejected request, unusable answer) will not go
        away by waiting and is parked on first sight.
        """
        ceiling = self.config.retry_attempts
        transient = isinstance(error, ProviderUnavailableError)

        async with self._session_maker() as session:
            row = await get_ledger_row(
                session, payment_id, PaymentProvider.NOWPAYMENTS.value, for_update=True
            )
            if row is None or row.is_settled:
                await self._queue.remove(payment_id)
                return "not_found"

            extra = dict(row.extra_data or {})
            extra["lastError"] = str(error)[:500]
            row.last_monitored_at = now

            if transient and row.retry_count < ceiling:
                row.retry_count += 1
                retry_count = row.retry_count
                row.extra_data = extra
                await session.commit()

                delay = min(
                    self.config.retry_delay_sec * (2 ** (retry_count - 1)),
                    self.config.max_retry_delay_sec,
                )
                await self._failures.record(
                    payment_id,
                    FailureCategory.NETWORK,
                    str(error),
                    {"retry_count": retry_count, "next_retry_in_sec": delay},
                )
                await self._queue.push(payment_id, now + timedelta(seconds=delay))
                logger.warning(
                    f"⚠️ Status fetch failed for {payment_id} "
                    f"(retry {retry_count}/{ceiling}, next in {delay:.0f}s): {error}"
                )
                return "retry_scheduled"

            if transient:
                category = FailureCategory.MONITORING_FAILED
                message = f"Retry limit reached ({ceiling}): {error}"
                notes = f"Gave up after {ceiling} retries: {error}"
            else:
                category = FailureCategory.PROVIDER_REJECTED
                message = f"Provider rejected status request: {error}"
                notes = message

            row.monitoring_status = MonitoringStatus.FAILED.value
            extra["monitoringFailedAt"] = now.isoformat()
            row.extra_data = extra
            retry_count = row.retry_count
            await AdminTaskService.ensure_task(
                session,
                AdminTaskCategory.PAYMENT_MONITORING_FAILED,
                payment_entity(payment_id),
                title=f"Payment {payment_id} could not be monitored",
                task_type="payment",
                priority=AdminTaskPriority.HIGH,
                notes=notes,
                user_id=row.user_id,
            )
            await session.commit()

        await self._failures.record(payment_id, category, message, {"retry_count": retry_count})
        await self._queue.remove(payment_id)
        logger.error(f"❌ Monitoring failed for payment {payment_id}: {message}")
        return "monitoring_failed"

    # ------------------------------------------------------------------
    # Operational controls
    # ------------------------------------------------------------------

    async def add_pending_payment(self, payment_id: str) -> bool:
        added = await self._queue.push(payment_id)
        if added:
            logger.info(f"Payment {payment_id} added to monitoring queue")
        return added

    async def trigger_payment_check(self, payment_id: Optional[str] = None) -> Dict[str, Any]:
        """Check one payment now, or run a full tick when no ID is given"""
        if payment_id:
            result = await self.process_payment(payment_id)
            return {"payment_id": payment_id, "result": result}
        return await self.run_tick(force=True)

    async def retry_failed_payment(self, payment_id: str, admin: str = "admin") -> bool:
        """
        Put a parked payment back under monitoring

        Refused for provider-declared failures (expired, failed, refunded)
        and for payments already credited.
        """
        record = await self._failures.get(payment_id)
        if record is not None and not record.can_retry:
            logger.warning(
                f"Retry refused for {payment_id}: category {record.category.value} is not retryable"
            )
            return False

        async with self._session_maker() as session:
            row = await get_ledger_row(
                session, payment_id, PaymentProvider.NOWPAYMENTS.value, for_update=True
            )
            if row is None or row.is_settled:
                logger.warning(f"Retry refused for {payment_id}: no unsettled ledger row")
                return False

            row.retry_count = 0
            row.monitoring_status = MonitoringStatus.MONITORING.value
            row.extra_data = {
                **(row.extra_data or {}),
                "manualRetryBy": admin,
                "manualRetryAt": datetime.now(UTC).isoformat(),
            }
            for category in (
                AdminTaskCategory.PAYMENT_MONITORING_FAILED,
                AdminTaskCategory.PAYMENT_ALLOCATION_REJECTED,
            ):
                await AdminTaskService.complete_task(
                    session, category, payment_entity(payment_id), completed_by=admin
                )
            await session.commit()

        await self._failures.resolve(payment_id)
        await self._queue.push(payment_id)
        logger.info(f"🔄 Payment {payment_id} requeued for monitoring by {admin}")
        return True

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        ticks = self._metrics["ticks"]
        last_run = self._metrics["last_run_time"]
        return {
            "enabled": self.enabled,
            "total_payments_monitored": self._metrics["total_payments_monitored"],
            "successful_updates": self._metrics["successful_updates"],
            "failed_updates": self._metrics["failed_updates"],
            "credits_allocated": self._metrics["credits_allocated"],
            "last_run_time": last_run.isoformat() if last_run else None,
            "average_processing_time_ms": (
                round(self._metrics["total_processing_ms"] / ticks, 2) if ticks else 0.0
            ),
        }

    def reset_metrics(self) -> None:
        self._metrics = self._empty_metrics()
        logger.info("Payment monitoring metrics reset")

    async def health_check(self) -> Dict[str, Any]:
        queue_size = await self._queue.size()
        provider_ok = bool(getattr(self._provider, "enabled", True))
        last_run = self._metrics["last_run_time"]
        enabled = await self.is_enabled()

        status = "healthy"
        if not enabled:
            status = "stopped"
        elif queue_size is None or not provider_ok:
            status = "degraded"

        return {
            "status": status,
            "enabled": enabled,
            "queue_size": queue_size,
            "queue_available": queue_size is not None,
            "provider_configured": provider_ok,
            "last_run_time": last_run.isoformat() if last_run else None,
        }
