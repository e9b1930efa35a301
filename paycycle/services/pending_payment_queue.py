# coding: utf-8
"""
Pending-payment queue

Work list of provider payment IDs awaiting a terminal status. Stored as a
Redis sorted set scored by the earliest time the entry may be polled again,
which is how retry backoff is expressed. It is a cache: the ledger rows with
an active monitoring_status are the source of truth and the queue is rebuilt
from them at startup.
"""
from datetime import datetime, timedelta, UTC
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.cache_config import CacheTTL
from paycycle.cache.cache_keys import CacheKeys
from paycycle.cache.redis_manager import RedisManager
from paycycle.core.enums import MonitoringStatus, PaymentProvider
from paycycle.core.exceptions import CoordinationStoreError
from paycycle.database.models import CreditTransaction


async def fetch_active_payment_ids(
    session: AsyncSession,
    lookback_days: int = 7,
    limit: Optional[int] = None,
) -> List[str]:
    """
    Provider payment IDs of ledger rows still being monitored

    Oldest first, restricted to rows created within the lookback window.
    """
    since = datetime.now(UTC) - timedelta(days=lookback_days)
    active = [s.value for s in MonitoringStatus.active_states()]

    stmt = (
        select(CreditTransaction.payment_id)
        .where(
            CreditTransaction.payment_id.is_not(None),
            CreditTransaction.payment_provider == PaymentProvider.NOWPAYMENTS.value,
            CreditTransaction.monitoring_status.in_(active),
            CreditTransaction.created_at >= since,
        )
        .order_by(CreditTransaction.created_at, CreditTransaction.id)
    )
    if limit:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return [payment_id for payment_id in result.scalars().all()]


class PendingPaymentQueue:
    """
    Bounded set of payment IDs with a per-entry not-before time

    Every method degrades instead of raising: a False/None return tells the
    caller the store is unreachable and it should read work from the ledger.
    """

    def __init__(
        self,
        redis: RedisManager,
        ttl: int = CacheTTL.PENDING_QUEUE,
        max_size: int = 10000,
    ):
        self._redis = redis
        self._ttl = ttl
        self._max_size = max_size
        self._key = CacheKeys.pending_payments()

    async def push(self, payment_id: str, not_before: Optional[datetime] = None) -> bool:
        """
        Add or reschedule an entry

        Args:
            payment_id: Provider payment ID
            not_before: Earliest next poll (default: now)

        Returns:
            True if stored. False if the store is down or the queue is full;
            the ledger row still carries the work in both cases.
        """
        when = not_before or datetime.now(UTC)
        try:
            if await self._redis.zscore(self._key, payment_id) is None:
                if await self._redis.zcard(self._key) >= self._max_size:
                    logger.warning(
                        f"⚠️ Pending queue full ({self._max_size}), {payment_id} left to ledger rehydration"
                    )
                    return False
            await self._redis.zadd(self._key, {payment_id: when.timestamp()}, ttl=self._ttl)
            return True
        except CoordinationStoreError as e:
            logger.warning(f"Pending queue push failed for {payment_id}: {e}")
            return False

    async def remove(self, payment_id: str) -> bool:
        try:
            return await self._redis.zrem(self._key, payment_id) > 0
        except CoordinationStoreError as e:
            logger.warning(f"Pending queue remove failed for {payment_id}: {e}")
            return False

    async def due(self, limit: int, now: Optional[datetime] = None) -> Optional[List[str]]:
        """
        Entries whose not-before time has passed, earliest first

        Returns:
            Payment IDs, or None when the store is unreachable
        """
        moment = now or datetime.now(UTC)
        try:
            return await self._redis.zrangebyscore(self._key, moment.timestamp(), limit)
        except CoordinationStoreError as e:
            logger.warning(f"Pending queue read failed: {e}")
            return None

    async def size(self) -> Optional[int]:
        try:
            return await self._redis.zcard(self._key)
        except CoordinationStoreError:
            return None

    async def exists(self) -> Optional[bool]:
        """Whether the work list key is present (it expires when idle)"""
        try:
            return await self._redis.key_exists(self._key)
        except CoordinationStoreError:
            return None

    async def contains(self, payment_id: str) -> bool:
        try:
            return await self._redis.zscore(self._key, payment_id) is not None
        except CoordinationStoreError:
            return False

    async def rehydrate(self, session: AsyncSession, lookback_days: int = 7) -> int:
        """
        Rebuild the queue from ledger rows with an active monitoring status

        Existing entries keep their backoff schedule.

        Returns:
            Number of entries added
        """
        payment_ids = await fetch_active_payment_ids(session, lookback_days=lookback_days)
        added = 0
        for payment_id in payment_ids:
            if await self.contains(payment_id):
                continue
            if await self.push(payment_id):
                added += 1

        logger.info(
            f"Pending queue rehydrated: {added} added, {len(payment_ids)} active in ledger"
        )
        return added
