# coding: utf-8
"""
Payment Failure Registry

Categorized, TTL'd failure records keyed by provider payment ID. Records are
ephemeral; the durable trace of a terminal failure lives on the ledger row
(monitoring_status=failed plus failure details in its metadata).
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional

from loguru import logger

from config.cache_config import CacheTTL
from paycycle.cache.cache_keys import CacheKeys
from paycycle.cache.redis_manager import RedisManager
from paycycle.core.enums import FailureCategory


@dataclass
class FailureRecord:
    """One payment's failure history"""
    payment_id: str
    category: FailureCategory
    message: str
    attempts: int = 1
    first_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_failed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def can_retry(self) -> bool:
        return self.category.can_retry

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["category"] = self.category.value
        data["first_failed_at"] = self.first_failed_at.isoformat()
        data["last_failed_at"] = self.last_failed_at.isoformat()
        data["can_retry"] = self.can_retry
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailureRecord":
        return cls(
            payment_id=str(data["payment_id"]),
            category=FailureCategory(data["category"]),
            message=data.get("message", ""),
            attempts=int(data.get("attempts", 1)),
            first_failed_at=datetime.fromisoformat(data["first_failed_at"]),
            last_failed_at=datetime.fromisoformat(data["last_failed_at"]),
            details=data.get("details") or {},
        )


class PaymentFailureRegistry:
    """
    record / resolve / list_active over Redis JSON values

    Recording the same payment again bumps attempts, keeps the first failure
    time and takes the newest category and message.
    """

    def __init__(self, redis: RedisManager, ttl: int = CacheTTL.PAYMENT_FAILURE):
        self._redis = redis
        self._ttl = ttl
        self._metrics = {
            "recorded": 0,
            "resolved": 0,
            "by_category": {c.value: 0 for c in FailureCategory},
        }

    async def record(
        self,
        payment_id: str,
        category: FailureCategory,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> FailureRecord:
        existing = await self.get(payment_id)
        now = datetime.now(UTC)

        if existing:
            record = FailureRecord(
                payment_id=payment_id,
                category=category,
                message=message,
                attempts=existing.attempts + 1,
                first_failed_at=existing.first_failed_at,
                last_failed_at=now,
                details={**existing.details, **(details or {})},
            )
        else:
            record = FailureRecord(
                payment_id=payment_id,
                category=category,
                message=message,
                first_failed_at=now,
                last_failed_at=now,
                details=details or {},
            )

        stored = await self._redis.set(CacheKeys.payment_failure(payment_id), record.to_dict(), ttl=self._ttl)
        if not stored:
            logger.warning(f"Failure record for {payment_id} not stored (Redis unavailable)")

        self._metrics["recorded"] += 1
        self._metrics["by_category"][category.value] += 1

        log = logger.warning if category.can_retry else logger.error
        log(
            f"❌ Payment failure recorded: payment_id={payment_id}, "
            f"category={category.value}, attempts={record.attempts}, message={message}"
        )
        return record

    async def resolve(self, payment_id: str) -> bool:
        """Clear the record once the payment reached a success state"""
        resolved = await self._redis.delete(CacheKeys.payment_failure(payment_id))
        if resolved:
            self._metrics["resolved"] += 1
            logger.info(f"✅ Failure record resolved: payment_id={payment_id}")
        return resolved

    async def get(self, payment_id: str) -> Optional[FailureRecord]:
        data = await self._redis.get(CacheKeys.payment_failure(payment_id))
        if not isinstance(data, dict):
            return None
        try:
            return FailureRecord.from_dict(data)
        except (KeyError, ValueError) as e:
            logger.warning(f"Corrupt failure record for {payment_id}: {e}")
            return None

    async def list_active(
        self,
        category: Optional[FailureCategory] = None,
        retryable_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> List[FailureRecord]:
        """
        Active failure records, most recent first

        Args:
            category: Only this category
            retryable_only: Only categories that allow a retry
            limit: Page size
            offset: Page offset
        """
        pattern = CacheKeys.payment_failure_pattern()
        records: List[FailureRecord] = []

        for key in await self._redis.scan_keys(pattern):
            record = await self.get(CacheKeys.strip_prefix(key, pattern))
            if record is None:
                continue
            if category is not None and record.category != category:
                continue
            if retryable_only and not record.can_retry:
                continue
            records.append(record)

        records.sort(key=lambda r: r.last_failed_at, reverse=True)
        return records[offset:offset + limit]

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "recorded": self._metrics["recorded"],
            "resolved": self._metrics["resolved"],
            "by_category": dict(self._metrics["by_category"]),
        }

    def reset_metrics(self) -> None:
        self._metrics["recorded"] = 0
        self._metrics["resolved"] = 0
        self._metrics["by_category"] = {c.value: 0 for c in FailureCategory}
