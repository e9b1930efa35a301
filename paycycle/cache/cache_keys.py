# coding: utf-8
"""
Redis key names

Key format: {area}:{kind}:{id}

Examples:
    payment_monitoring:pending_payments
    payment_failure:5077125051
    credit_allocation:completed:5077125051
    jobs:subscription_renewal
"""

from config.cache_config import CacheConfig


class CacheKeys:
    """Builds every Redis key the orchestrator touches"""

    SEPARATOR = CacheConfig.CACHE_KEY_SEPARATOR

    @classmethod
    def build(cls, *parts: object) -> str:
        return cls.SEPARATOR.join(str(part) for part in parts)

    @classmethod
    def pending_payments(cls) -> str:
        """Sorted set of payment IDs scored by their next-attempt timestamp"""
        return cls.build("payment_monitoring", "pending_payments")

    @classmethod
    def monitoring_switch(cls) -> str:
        """Shared start/stop state of payment monitoring ("1" or "0")"""
        return cls.build("payment_monitoring", "enabled")

    @classmethod
    def payment_failure(cls, payment_id: str) -> str:
        return cls.build("payment_failure", payment_id)

    @classmethod
    def payment_failure_pattern(cls) -> str:
        return cls.build("payment_failure", "*")

    @classmethod
    def allocation_completed(cls, payment_id: str) -> str:
        return cls.build("credit_allocation", "completed", payment_id)

    @classmethod
    def allocation_in_flight(cls, payment_id: str) -> str:
        return cls.build("credit_allocation", "inflight", payment_id)

    @classmethod
    def job_lock(cls, job_name: str) -> str:
        """Lease key for a scheduled job, e.g. jobs:subscription_renewal"""
        return cls.build("jobs", job_name.replace("-", "_"))

    @classmethod
    def strip_prefix(cls, key: str, prefix_key: str) -> str:
        """payment_failure:123 with prefix payment_failure:* -> 123"""
        prefix = prefix_key.rstrip("*")
        return key[len(prefix):] if key.startswith(prefix) else key
