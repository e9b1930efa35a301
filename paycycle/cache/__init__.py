# coding: utf-8
"""
Redis layer for coordination state

Leases, the pending-payment work list, failure records and allocation
markers. None of it is a system of record.
"""

from paycycle.cache.redis_manager import RedisManager, get_redis_manager
from paycycle.cache.cache_keys import CacheKeys

__all__ = ["RedisManager", "get_redis_manager", "CacheKeys"]
