# coding: utf-8
"""
Job registration

Jobs:
- payment-monitoring: poll pending crypto payments
- subscription-renewal: renew or escalate due subscriptions
- subscription-expiry: expire lapsed subscriptions, cancel their open charges
- admin-task-reconciliation: close renewal tasks whose cause is gone
"""
from typing import List, Optional

from loguru import logger

from config.config import JOBS_ENABLED, PAYMENT_MONITORING_AUTO_START
from config.orchestrator import OrchestratorConfig, get_config
from paycycle.cache.cache_keys import CacheKeys
from paycycle.tasks.scheduler import JobScheduler

PAYMENT_MONITORING_JOB = "payment-monitoring"
SUBSCRIPTION_RENEWAL_JOB = "subscription-renewal"
SUBSCRIPTION_EXPIRY_JOB = "subscription-expiry"
ADMIN_TASK_RECONCILIATION_JOB = "admin-task-reconciliation"


def register_jobs(
    scheduler: JobScheduler,
    orchestrator,
    config: Optional[OrchestratorConfig] = None,
    jobs_enabled: bool = JOBS_ENABLED,
    monitoring_auto_start: bool = PAYMENT_MONITORING_AUTO_START,
) -> List[str]:
    """
    Register the orchestrator's periodic jobs

    Args:
        scheduler: Target scheduler
        orchestrator: Orchestrator holding the services
        config: Orchestrator config (default: process config)
        jobs_enabled: JOBS_ENABLED switch; False registers nothing
        monitoring_auto_start: False leaves payment monitoring out

    Returns:
        Registered job names
    """
    if not jobs_enabled:
        logger.warning("⚠️ JOBS_ENABLED=false, no background jobs registered")
        return []

    config = config or get_config()
    registered: List[str] = []

    if monitoring_auto_start:
        scheduler.register(
            PAYMENT_MONITORING_JOB,
            interval=config.monitoring.interval_sec,
            initial_delay=config.monitoring.retry_delay_sec,
            run_fn=orchestrator.monitoring.run_tick,
            lock_key=CacheKeys.job_lock(PAYMENT_MONITORING_JOB),
            lock_ttl=config.monitoring.lock_ttl_sec,
            timeout=config.monitoring.timeout_sec,
        )
        registered.append(PAYMENT_MONITORING_JOB)
    else:
        logger.info("PAYMENT_MONITORING_AUTO_START=false, payment monitoring job not registered")

    scheduler.register(
        SUBSCRIPTION_RENEWAL_JOB,
        interval=config.renewal.interval_sec,
        initial_delay=config.renewal.initial_delay_sec,
        run_fn=orchestrator.renewal.run_sweep,
        lock_key=CacheKeys.job_lock(SUBSCRIPTION_RENEWAL_JOB),
        lock_ttl=config.renewal.lock_ttl_sec,
        timeout=config.renewal.timeout_sec,
    )
    registered.append(SUBSCRIPTION_RENEWAL_JOB)

    scheduler.register(
        SUBSCRIPTION_EXPIRY_JOB,
        interval=config.scheduler.expiry_interval_sec,
        initial_delay=config.renewal.initial_delay_sec * 2,
        run_fn=orchestrator.renewal.run_expiry_sweep,
        lock_key=CacheKeys.job_lock(SUBSCRIPTION_EXPIRY_JOB),
        lock_ttl=config.renewal.lock_ttl_sec,
        timeout=config.renewal.timeout_sec,
    )
    registered.append(SUBSCRIPTION_EXPIRY_JOB)

    scheduler.register(
        ADMIN_TASK_RECONCILIATION_JOB,
        interval=config.scheduler.reconciliation_interval_sec,
        initial_delay=config.renewal.initial_delay_sec * 3,
        run_fn=orchestrator.renewal.reconcile_open_tasks,
        lock_key=CacheKeys.job_lock(ADMIN_TASK_RECONCILIATION_JOB),
        lock_ttl=config.scheduler.reconciliation_interval_sec,
    )
    registered.append(ADMIN_TASK_RECONCILIATION_JOB)

    logger.info(f"✅ Background jobs registered: {', '.join(registered)}")
    return registered
