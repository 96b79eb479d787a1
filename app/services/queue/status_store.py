"""
Job status bookkeeping, queryable by job id. Not authoritative business
state; entries expire after JOB_STATUS_TTL_SECONDS.
"""

import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from app.models.domain.report_domain import JobState
from app.services.infrastructure.redis_client import FastRedisClient

STATUS_KEY_PREFIX = "report-job:status"


class JobStatusStore(ABC):
    @abstractmethod
    async def save(self, state: JobState) -> None: ...

    @abstractmethod
    async def get(self, job_id: str) -> JobState | None: ...


class RedisJobStatusStore(JobStatusStore):
    def __init__(self, redis: FastRedisClient, ttl_seconds: int):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def save(self, state: JobState) -> None:
        await self.redis.set_with_ttl(
            f"{STATUS_KEY_PREFIX}:{state.job_id}", state.model_dump_json(), self.ttl_seconds
        )

    async def get(self, job_id: str) -> JobState | None:
        raw = await self.redis.get(f"{STATUS_KEY_PREFIX}:{job_id}")
        return JobState.model_validate_json(raw) if raw else None


class InMemoryJobStatusStore(JobStatusStore):
    def __init__(self, ttl_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._states: dict[str, tuple[float, JobState]] = {}

    async def save(self, state: JobState) -> None:
        self._states[state.job_id] = (self.clock() + self.ttl_seconds, state)

    async def get(self, job_id: str) -> JobState | None:
        entry = self._states.get(job_id)
        if entry is None:
            return None
        expires, state = entry
        if expires <= self.clock():
            del self._states[job_id]
            return None
        return state
