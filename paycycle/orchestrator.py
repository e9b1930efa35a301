# coding: utf-8
"""
Orchestrator wiring

Builds the services once per process and connects the ones that call each
other (event processor ↔ renewal service). Used by worker.py, api_server.py
and the tests.
"""
from dataclasses import dataclass
from typing import Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.orchestrator import OrchestratorConfig, get_config
from paycycle.cache.redis_manager import RedisManager, get_redis_manager
from paycycle.database.engine import get_session_maker
from paycycle.services.credit_allocation_service import CreditAllocationService
from paycycle.services.failure_registry import PaymentFailureRegistry
from paycycle.services.lock_coordinator import LockCoordinator, RedisLockCoordinator
from paycycle.services.nowpayments_service import get_nowpayments_service
from paycycle.services.payment_events import PaymentEventProcessor
from paycycle.services.payment_monitoring_service import PaymentMonitoringService
from paycycle.services.pending_payment_queue import PendingPaymentQueue
from paycycle.services.stripe_service import get_stripe_service
from paycycle.services.subscription_renewal_service import SubscriptionRenewalService
from paycycle.tasks.scheduler import JobScheduler


@dataclass
class Orchestrator:
    """Every long-lived service of the payment lifecycle"""
    config: OrchestratorConfig
    session_maker: async_sessionmaker[AsyncSession]
    redis: RedisManager
    nowpayments: object
    stripe: object
    lock: LockCoordinator
    queue: PendingPaymentQueue
    failures: PaymentFailureRegistry
    allocation: CreditAllocationService
    events: PaymentEventProcessor
    monitoring: PaymentMonitoringService
    renewal: SubscriptionRenewalService
    scheduler: JobScheduler


def build_orchestrator(
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
    redis: Optional[RedisManager] = None,
    nowpayments=None,
    stripe=None,
    lock: Optional[LockCoordinator] = None,
    config: Optional[OrchestratorConfig] = None,
) -> Orchestrator:
    """
    Assemble the services

    Every dependency can be injected; defaults are the process singletons.
    """
    config = config or get_config()
    session_maker = session_maker or get_session_maker()
    redis = redis or get_redis_manager()
    nowpayments = nowpayments or get_nowpayments_service()
    stripe = stripe or get_stripe_service()
    lock = lock or RedisLockCoordinator(redis)

    queue = PendingPaymentQueue(redis)
    failures = PaymentFailureRegistry(redis)
    allocation = CreditAllocationService(session_maker, redis, config.allocation)
    events = PaymentEventProcessor(session_maker, allocation, queue, failures)
    renewal = SubscriptionRenewalService(session_maker, stripe=stripe, events=events, config=config.renewal)
    events.renewal = renewal
    monitoring = PaymentMonitoringService(
        session_maker, nowpayments, queue, failures, events, config=config.monitoring, redis=redis
    )
    scheduler = JobScheduler(lock, shutdown_timeout=config.scheduler.shutdown_timeout_sec)

    logger.debug("Orchestrator services assembled")
    return Orchestrator(
        config=config,
        session_maker=session_maker,
        redis=redis,
        nowpayments=nowpayments,
        stripe=stripe,
        lock=lock,
        queue=queue,
        failures=failures,
        allocation=allocation,
        events=events,
        monitoring=monitoring,
        renewal=renewal,
        scheduler=scheduler,
    )


_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Get the process orchestrator (singleton)"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    """Replace the process orchestrator (tests, custom wiring)"""
    global _orchestrator
    _orchestrator = orchestrator
