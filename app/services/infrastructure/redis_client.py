# app/services/infrastructure/redis_client.py
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class RedisNotConfiguredError(RuntimeError):
    """Raised when a Redis-backed component is used without REDIS_URL."""


class FastRedisClient:
    """Pooled async Redis client used for job dedup, job status, refresh leases and the job list."""

    def __init__(self, url: str | None = None):
        self.url = url
        self.pool = None
        self.client = None
        self._initialized = False

    @property
    def configured(self) -> bool:
        return bool(self.url or settings.REDIS_URL)

    async def initialize(self):
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        redis_url = self.url or settings.REDIS_URL
        if not redis_url:
            raise RedisNotConfiguredError("REDIS_URL not configured")

        try:
            logger.info("Attempting Redis connection", host=settings.redis_host())

            self.pool = ConnectionPool.from_url(
                redis_url,
                max_connections=20,
                retry_on_timeout=True,
                retry_on_error=[redis.ConnectionError, redis.TimeoutError],
                socket_connect_timeout=10,
                socket_timeout=10,
                health_check_interval=30,
                decode_responses=True,
            )

            self.client = redis.Redis(connection_pool=self.pool)

            result = await self.client.ping()
            logger.info("Redis ping successful", result=result)

            self._initialized = True

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self):
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self):
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def get(self, key: str) -> str | None:
        await self._ensure_initialized()
        result = await self.client.get(key)
        return result if result else None

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        await self._ensure_initialized()
        if ttl_s:
            result = await self.client.setex(key, ttl_s, value)
        else:
            result = await self.client.set(key, value)
        return bool(result)

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        """Atomic claim (SET NX EX). True only for the first caller."""
        await self._ensure_initialized()
        result = await self.client.set(key, value, nx=True, ex=ttl_s)
        return bool(result)

    async def delete_if_value(self, key: str, value: str) -> bool:
        """Delete key only if it still holds value (lease release)."""
        await self._ensure_initialized()
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    if current != value:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return True
                except redis.WatchError:
                    continue

    async def push_to_list(self, key: str, value: str, left: bool = True) -> bool:
        """Push a value onto a Redis list (used as the report job queue)."""
        await self._ensure_initialized()
        if left:
            result = await self.client.lpush(key, value)
        else:
            result = await self.client.rpush(key, value)
        return result > 0

    async def pop_to_inflight(
        self, source_key: str, inflight_key: str, timeout: int = 0
    ) -> str | None:
        """
        Pop a value from a list and push to an in-flight list (acked queue).

        Uses BLMOVE for blocking behavior to avoid losing jobs on worker crash.
        """
        await self._ensure_initialized()
        if timeout > 0:
            return await self.client.blmove(source_key, inflight_key, timeout, "RIGHT", "LEFT")
        return await self.client.lmove(source_key, inflight_key, "RIGHT", "LEFT")

    async def ack_from_inflight(self, inflight_key: str, value: str) -> bool:
        """Remove a processed item from the in-flight list."""
        await self._ensure_initialized()
        removed = await self.client.lrem(inflight_key, 0, value)
        return removed > 0

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        await self._ensure_initialized()
        result = await self.client.lrange(key, start, end)
        return [str(item) for item in result] if result else []

    async def list_length(self, key: str) -> int:
        await self._ensure_initialized()
        return int(await self.client.llen(key))


# Global instance
fast_redis = FastRedisClient()
