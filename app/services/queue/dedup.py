"""
Job id dedup cache.

The first delivery of a job id claims it; later deliveries see the claim and
short-circuit. Claims are never released early, only evicted by TTL, so a
failed job id is not re-run by a replayed trigger.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from app.services.infrastructure.redis_client import FastRedisClient

DEDUP_KEY_PREFIX = "report-job:dedup"


class DedupCache(ABC):
    @abstractmethod
    async def claim(self, job_id: str) -> bool:
        """Atomically record job_id. True only for the first caller within the TTL."""

    @abstractmethod
    async def seen(self, job_id: str) -> bool:
        """Whether job_id has been claimed and not yet evicted."""


class RedisDedupCache(DedupCache):
    """Shared across API instances and workers (SET NX EX)."""

    def __init__(self, redis: FastRedisClient, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def _key(self, job_id: str) -> str:
        return f"{DEDUP_KEY_PREFIX}:{job_id}"

    async def claim(self, job_id: str) -> bool:
        return await self.redis.set_if_absent(self._key(job_id), str(int(time.time())), self.ttl_seconds)

    async def seen(self, job_id: str) -> bool:
        return await self.redis.get(self._key(job_id)) is not None


class InMemoryDedupCache(DedupCache):
    """Single-process TTL cache for inline deployments without Redis."""

    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._claims: dict[str, float] = {}

    def _evict_expired(self) -> None:
        now = self.clock()
        for job_id in [k for k, expires in self._claims.items() if expires <= now]:
            del self._claims[job_id]

    async def claim(self, job_id: str) -> bool:
        # No await between check and set, so this is atomic on the event loop
        self._evict_expired()
        if job_id in self._claims:
            return False
        self._claims[job_id] = self.clock() + self.ttl_seconds
        return True

    async def seen(self, job_id: str) -> bool:
        self._evict_expired()
        return job_id in self._claims
