# coding: utf-8
"""
Redis configuration for coordination state

Everything stored in Redis is ephemeral: leases, the pending-payment work
list, failure records and allocation markers. The database stays the system
of record.
"""
import os


class CacheTTL:
    """
    Time-to-live settings for coordination keys in seconds
    """

    PENDING_QUEUE = int(os.getenv("CACHE_TTL_PENDING_QUEUE", "3600"))
    """Pending-payment work list - 1 hour, refreshed on every write"""

    PAYMENT_FAILURE = int(os.getenv("CACHE_TTL_PAYMENT_FAILURE", str(7 * 24 * 3600)))
    """Failure records - 7 days"""

    ALLOCATION_COMPLETED = int(os.getenv("CACHE_TTL_ALLOCATION_COMPLETED", str(24 * 3600)))
    """Allocation done marker - 24 hours"""

    ALLOCATION_IN_FLIGHT = int(os.getenv("CACHE_TTL_ALLOCATION_IN_FLIGHT", "60"))
    """Allocation in-progress marker - 1 minute"""

    DEFAULT = int(os.getenv("CACHE_TTL_DEFAULT", "300"))
    """Default TTL for anything not listed above - 5 minutes"""


class CacheConfig:
    """
    Redis connection and behavior configuration
    """

    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    """Redis connection URL"""

    REDIS_MAX_CONNECTIONS = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    """Maximum connections in pool"""

    REDIS_SOCKET_TIMEOUT = int(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))
    """Socket timeout in seconds"""

    REDIS_SOCKET_CONNECT_TIMEOUT = int(os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "5"))
    """Socket connect timeout in seconds"""

    CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
    """Disable only for local debugging: scheduled jobs will skip every tick"""

    CACHE_KEY_SEPARATOR = ":"
    """Separator for key components"""

    CACHE_LOG_MISSES = os.getenv("CACHE_LOG_MISSES", "false").lower() == "true"
    """Log misses on JSON lookups"""
