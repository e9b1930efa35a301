"""
Orchestrator Configuration

Defaults for the payment monitoring loop, credit allocation, renewal sweep
and job scheduler. Every value can be overridden from the environment.
"""
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Tuple


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class MonitoringConfig:
    """Payment monitoring loop settings."""
    interval_sec: int = field(
        default_factory=lambda: _int("PAYMENT_MONITORING_INTERVAL", 30000) // 1000
    )
    batch_size: int = field(default_factory=lambda: _int("PAYMENT_MONITORING_BATCH_SIZE", 50))
    retry_attempts: int = field(default_factory=lambda: _int("PAYMENT_RETRY_ATTEMPTS", 3))
    retry_delay_sec: float = field(
        default_factory=lambda: _int("PAYMENT_RETRY_DELAY", 5000) / 1000
    )
    max_retry_delay_sec: float = 300.0
    rehydrate_lookback_days: int = 7
    lock_ttl_sec: int = 120
    timeout_sec: int = 110


@dataclass
class AllocationConfig:
    """Credit allocation settings."""
    credit_rate: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("CREDIT_ALLOCATION_RATE", "1.0"))
    )
    max_allocation: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("MAX_CREDIT_ALLOCATION", "10000"))
    )
    # Tolerance when comparing paid vs requested amounts
    full_payment_epsilon: Decimal = Decimal("0.00000001")


@dataclass
class RenewalConfig:
    """Subscription renewal sweep settings."""
    interval_sec: int = field(
        default_factory=lambda: _int("SUBSCRIPTION_RENEWAL_INTERVAL", 300000) // 1000
    )
    lookahead_minutes: int = field(
        default_factory=lambda: _int("SUBSCRIPTION_RENEWAL_LOOKAHEAD_MINUTES", 1440)
    )
    batch_size: int = field(default_factory=lambda: _int("SUBSCRIPTION_RENEWAL_BATCH_SIZE", 50))
    retry_minutes: int = field(default_factory=lambda: _int("SUBSCRIPTION_RENEWAL_RETRY_MINUTES", 360))
    initial_delay_sec: int = 10
    lock_ttl_sec: int = 300
    timeout_sec: int = 280
    credit_currencies: Tuple[str, ...] = ("usd",)


@dataclass
class SchedulerConfig:
    """Job scheduler settings."""
    shutdown_timeout_sec: float = 30.0
    reconciliation_interval_sec: int = field(
        default_factory=lambda: _int("ADMIN_TASK_RECONCILIATION_INTERVAL", 900)
    )
    expiry_interval_sec: int = field(
        default_factory=lambda: _int("SUBSCRIPTION_EXPIRY_INTERVAL", 3600000) // 1000
    )


@dataclass
class OrchestratorConfig:
    """Full orchestrator configuration."""
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


ORCHESTRATOR_CONFIG = OrchestratorConfig()


def get_config() -> OrchestratorConfig:
    """Get the process-wide orchestrator configuration."""
    return ORCHESTRATOR_CONFIG
