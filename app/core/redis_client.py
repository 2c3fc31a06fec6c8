"""Redis connection and the fail-open projection cache."""

import json
from typing import Any, cast

import redis
import structlog

from app.config import settings

logger = structlog.get_logger(__name__)

_pool: redis.ConnectionPool | None = None


def _connection_pool() -> redis.ConnectionPool:
    global _pool

    if _pool is None:
        _pool = redis.ConnectionPool(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password or None,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=settings.redis_socket_timeout,
            socket_timeout=settings.redis_socket_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _pool


def get_redis_client() -> redis.Redis:
    """Redis client on the process-wide connection pool."""
    return redis.Redis(connection_pool=_connection_pool())


async def check_redis_connection() -> bool:
    """Ping Redis. An outage only disables the projection cache."""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.warning("redis_ping_failed", error=str(e))
        return False


def close_redis_connection() -> None:
    """Disconnect every pooled connection."""
    global _pool

    if _pool is not None:
        _pool.disconnect()
        _pool = None


class CacheManager:
    """JSON cache on Redis.

    Every operation fails open: errors are logged and reported as a miss or
    a failed write, so a cache outage degrades reads to the database and
    never fails a request.
    """

    def __init__(self, redis_client: redis.Redis):
        """Initialize cache manager with Redis client."""
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        """
        Read a cached JSON value.

        Returns:
            The decoded value, or None on a miss, a Redis error or a corrupt entry
        """
        try:
            value = cast(str | None, self.redis.get(key))
        except Exception as e:
            logger.debug("cache_read_failed", key=key, error=str(e))
            return None

        if not value:
            return None

        try:
            return json.loads(value)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=key)
            return None

    def set_json(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """
        Cache a JSON serializable value.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds, None to keep until deleted

        Returns:
            True if the value was written
        """
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(key, ttl, payload)
            else:
                self.redis.set(key, payload)
        except Exception as e:
            logger.debug("cache_write_failed", key=key, error=str(e))
            return False
        return True

    def get_counter(self, key: str) -> int | None:
        """
        Read an integer counter.

        Returns:
            The counter, 0 when it was never set, None when Redis cannot answer
        """
        try:
            value = self.redis.get(key)
            return int(cast(str | None, value) or 0)
        except Exception as e:
            logger.debug("cache_counter_read_failed", key=key, error=str(e))
            return None

    def increment(self, key: str, ttl: int | None = None) -> bool:
        """Increment a counter, refreshing its expiry when a TTL is given."""
        try:
            self.redis.incr(key)
            if ttl:
                self.redis.expire(key, ttl)
        except Exception as e:
            logger.warning("cache_counter_increment_failed", key=key, error=str(e))
            return False
        return True

    def delete(self, key: str) -> bool:
        """Drop a cached value; a failure leaves it to expire with its TTL."""
        try:
            self.redis.delete(key)
        except Exception as e:
            logger.warning("cache_invalidation_failed", key=key, error=str(e))
            return False
        return True


def get_cache_manager() -> CacheManager:
    """Dependency returning the projection cache."""
    return CacheManager(get_redis_client())
