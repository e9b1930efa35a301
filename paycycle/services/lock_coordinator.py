# coding: utf-8
"""
Distributed lock coordinator

Leased mutual exclusion for periodic jobs across process instances. A lease
expires on its own, so a crashed holder blocks others for at most its TTL.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from loguru import logger

from paycycle.cache.redis_manager import RedisManager
from paycycle.core.exceptions import CoordinationStoreError, LockCoordinatorUnavailable


class LockCoordinator(ABC):
    """acquire/release with lease semantics over any TTL-capable store"""

    @abstractmethod
    async def acquire(self, key: str, ttl: int) -> Optional[str]:
        """
        Try to take the lease

        Returns:
            Token on success, None if another holder owns the lease

        Raises:
            LockCoordinatorUnavailable: the store cannot be reached
        """

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lease if the token still owns it"""


class RedisLockCoordinator(LockCoordinator):
    """SET NX EX for acquire, compare-and-delete for release"""

    def __init__(self, redis: RedisManager):
        self._redis = redis

    async def acquire(self, key: str, ttl: int) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            acquired = await self._redis.set_if_absent(key, token, ttl)
        except CoordinationStoreError as e:
            raise LockCoordinatorUnavailable(str(e)) from e

        if not acquired:
            logger.debug(f"Lock busy: {key}")
            return None

        logger.debug(f"Lock acquired: {key} (ttl={ttl}s)")
        return token

    async def release(self, key: str, token: str) -> bool:
        try:
            released = await self._redis.delete_if_equals(key, token)
        except CoordinationStoreError as e:
            logger.warning(f"Lock release failed for {key}, lease will expire: {e}")
            return False

        if not released:
            logger.warning(f"Lock {key} was no longer ours at release (lease expired?)")
        return released
