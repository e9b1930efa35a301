# coding: utf-8
"""
Redis Manager for coordination state

Async Redis client with connection pooling. Two families of operations:

- JSON get/set/delete/scan with graceful degradation (failure records and
  allocation markers are hints, the database is authoritative);
- coordination primitives (NX sets, compare-and-delete, sorted sets) that
  raise CoordinationStoreError instead of guessing, so callers can fail
  closed.
"""
import json
from typing import Any, Dict, List, Optional, Union

from loguru import logger
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from config.cache_config import CacheConfig, CacheTTL
from paycycle.core.exceptions import CoordinationStoreError

# Delete the key only if it still holds our token
COMPARE_AND_DELETE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


class RedisManager:
    """
    Redis manager with connection pooling

    Usage:
        >>> redis_mgr = RedisManager()
        >>> await redis_mgr.initialize()
        >>> await redis_mgr.set("key", {"data": "value"}, ttl=300)
        >>> token_set = await redis_mgr.set_if_absent("jobs:x", "token", ttl=60)
        >>> await redis_mgr.close()
    """

    def __init__(self, url: Optional[str] = None):
        self._url = url or CacheConfig.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_available = False
        self._stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "sets": 0,
            "deletes": 0,
        }

    async def initialize(self) -> bool:
        """
        Initialize Redis connection pool

        Returns:
            True if Redis is available, False otherwise
        """
        if not CacheConfig.CACHE_ENABLED:
            logger.warning("Redis is disabled in configuration: scheduled jobs will skip")
            return False

        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=CacheConfig.REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                socket_connect_timeout=CacheConfig.REDIS_SOCKET_CONNECT_TIMEOUT,
                socket_timeout=CacheConfig.REDIS_SOCKET_TIMEOUT,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()

            self._is_available = True
            logger.info(
                f"Redis initialized successfully (max_connections={CacheConfig.REDIS_MAX_CONNECTIONS})"
            )
            return True

        except RedisConnectionError as e:
            logger.warning(f"Redis connection failed: {e}. Coordination is unavailable.")
            self._is_available = False
            return False

        except RedisError as e:
            logger.error(f"Unexpected error initializing Redis: {e}")
            self._is_available = False
            return False

    async def close(self):
        """Close Redis connections gracefully"""
        if self._client:
            try:
                await self._client.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis connection: {e}")

        if self._pool:
            try:
                await self._pool.aclose()
                logger.debug("Redis connection pool closed")
            except RedisError as e:
                logger.error(f"Error closing Redis pool: {e}")

        self._is_available = False

    # ------------------------------------------------------------------
    # JSON values (graceful degradation)
    # ------------------------------------------------------------------

    async def get(self, key: str, default: Any = None) -> Optional[Union[str, dict, list]]:
        """
        Get value, deserialized from JSON when possible

        Returns default when the key is missing or Redis is down.
        """
        if not self._is_available:
            return default

        try:
            value = await self._client.get(key)  # type: ignore

            if value is None:
                self._stats["misses"] += 1
                if CacheConfig.CACHE_LOG_MISSES:
                    logger.debug(f"Redis MISS: {key}")
                return default

            self._stats["hits"] += 1
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value

        except RedisError as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis GET error for key '{key}': {e}")
            return default

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value with TTL (JSON-serialized unless it is a plain string)

        Returns:
            True if successful, False otherwise
        """
        if not self._is_available:
            return False

        if ttl is None:
            ttl = CacheTTL.DEFAULT

        try:
            serialized = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, default=str)
            await self._client.setex(key, ttl, serialized)  # type: ignore
            self._stats["sets"] += 1
            return True

        except RedisError as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis SET error for key '{key}': {e}")
            return False

    async def delete(self, key: str) -> bool:
        """Delete key. True if something was deleted."""
        if not self._is_available:
            return False

        try:
            result = await self._client.delete(key)  # type: ignore
            self._stats["deletes"] += 1
            return result > 0

        except RedisError as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis DELETE error for key '{key}': {e}")
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists (False when Redis is down)"""
        if not self._is_available:
            return False

        try:
            return await self._client.exists(key) > 0  # type: ignore

        except RedisError as e:
            logger.warning(f"Redis EXISTS error for key '{key}': {e}")
            return False

    async def scan_keys(self, pattern: str) -> List[str]:
        """
        List keys matching a pattern with SCAN (never KEYS)

        Args:
            pattern: Key pattern (e.g. 'payment_failure:*')
        """
        if not self._is_available:
            return []

        try:
            return [key async for key in self._client.scan_iter(match=pattern)]  # type: ignore

        except RedisError as e:
            self._stats["errors"] += 1
            logger.warning(f"Redis SCAN error for pattern '{pattern}': {e}")
            return []

    # ------------------------------------------------------------------
    # Coordination primitives (raise CoordinationStoreError)
    # ------------------------------------------------------------------

    def _require_client(self) -> Redis:
        if not self._is_available or self._client is None:
            raise CoordinationStoreError("Redis is not available")
        return self._client

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """SET key value NX EX ttl. True if the key was set."""
        client = self._require_client()
        try:
            result = await client.set(key, value, nx=True, ex=ttl)
            return bool(result)
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"SET NX failed for '{key}': {e}") from e

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only when it still holds value. True if deleted."""
        client = self._require_client()
        try:
            result = await client.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, value)
            return int(result) == 1
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"Compare-and-delete failed for '{key}': {e}") from e

    async def get_value(self, key: str) -> Optional[str]:
        """Raw GET that raises when Redis is unreachable"""
        client = self._require_client()
        try:
            return await client.get(key)
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"GET failed for '{key}': {e}") from e

    async def set_value(self, key: str, value: str) -> None:
        """Raw SET without expiry that raises when Redis is unreachable"""
        client = self._require_client()
        try:
            await client.set(key, value)
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"SET failed for '{key}': {e}") from e

    async def zadd(self, key: str, mapping: Dict[str, float], ttl: Optional[int] = None) -> int:
        """Add members to a sorted set and refresh the key TTL"""
        client = self._require_client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.zadd(key, mapping)
                if ttl:
                    pipe.expire(key, ttl)
                results = await pipe.execute()
            return int(results[0])
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"ZADD failed for '{key}': {e}") from e

    async def zrem(self, key: str, *members: str) -> int:
        client = self._require_client()
        try:
            return int(await client.zrem(key, *members))
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"ZREM failed for '{key}': {e}") from e

    async def zrangebyscore(self, key: str, max_score: float, limit: int) -> List[str]:
        """Members with score <= max_score, lowest score first"""
        client = self._require_client()
        try:
            return list(await client.zrangebyscore(key, "-inf", max_score, start=0, num=limit))
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"ZRANGEBYSCORE failed for '{key}': {e}") from e

    async def zscore(self, key: str, member: str) -> Optional[float]:
        client = self._require_client()
        try:
            return await client.zscore(key, member)
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"ZSCORE failed for '{key}': {e}") from e

    async def zcard(self, key: str) -> int:
        client = self._require_client()
        try:
            return int(await client.zcard(key))
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"ZCARD failed for '{key}': {e}") from e

    async def key_exists(self, key: str) -> bool:
        """EXISTS that raises when Redis is unreachable"""
        client = self._require_client()
        try:
            return await client.exists(key) > 0
        except RedisError as e:
            self._stats["errors"] += 1
            raise CoordinationStoreError(f"EXISTS failed for '{key}': {e}") from e

    def get_stats(self) -> dict:
        """Redis usage counters"""
        total = self._stats["hits"] + self._stats["misses"]
        hit_rate = self._stats["hits"] / total if total > 0 else 0

        return {
            **self._stats,
            "total_requests": total,
            "hit_rate": round(hit_rate, 2),
            "is_available": self._is_available,
        }

    def is_available(self) -> bool:
        """Check if Redis is available"""
        return self._is_available


# Global Redis manager instance
_redis_manager: Optional[RedisManager] = None


def get_redis_manager() -> RedisManager:
    """
    Get global Redis manager instance (singleton)
    """
    global _redis_manager
    if _redis_manager is None:
        _redis_manager = RedisManager()
    return _redis_manager
