"""
Queue transports behind one interface.

- inline: submitting a job runs it in the caller (webhook-style deployments)
- qstash: publishes to Upstash QStash, which calls back POST /queue/process
- redis:  pushes to a Redis list; app.jobs.report_worker pulls and acks

The job queue and the orchestrator never depend on which one is selected.
"""

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import httpx

from app.config import Settings, settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import JobResult, ReportJob
from app.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)

Deliver = Callable[[ReportJob], Awaitable[JobResult]]

REDIS_QUEUE_KEY = "report-jobs:queue"
REDIS_INFLIGHT_KEY = "report-jobs:inflight"


class QueuePublishError(Exception):
    def __init__(self, message: str, backend: str, recoverable: bool = True):
        super().__init__(message)
        self.backend = backend
        self.recoverable = recoverable


def job_envelope(job: ReportJob, redelivered: bool = False) -> dict:
    return {"job": job.to_payload(), "timestamp": int(time.time()), "redelivered": redelivered}


class QueueBackend(ABC):
    name: str

    @abstractmethod
    async def submit(self, job: ReportJob, deliver: Deliver) -> JobResult | None:
        """
        Hand a job to the transport.

        Returns:
            The JobResult when the job ran synchronously, None when it was only queued

        Raises:
            QueuePublishError: transport refused the job
        """


class InlineBackend(QueueBackend):
    name = "inline"

    async def submit(self, job: ReportJob, deliver: Deliver) -> JobResult | None:
        return await deliver(job)


class QStashBackend(QueueBackend):
    name = "qstash"

    def __init__(
        self,
        token: str | None,
        base_url: str,
        callback_url: str,
        retries: int = 3,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self.retries = retries
        self.timeout = timeout
        self.transport = transport

    async def submit(self, job: ReportJob, deliver: Deliver) -> JobResult | None:
        if not self.token:
            raise QueuePublishError("QSTASH_TOKEN not configured", self.name, recoverable=False)

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Upstash-Deduplication-Id": job.job_id,
            "Upstash-Retries": str(self.retries),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/v2/publish/{self.callback_url}",
                    content=json.dumps(job_envelope(job)),
                    headers=headers,
                )
        except httpx.RequestError as e:
            raise QueuePublishError(f"QStash publish failed: {e}", self.name) from e

        if response.status_code >= 300:
            raise QueuePublishError(
                f"QStash publish rejected: HTTP {response.status_code}",
                self.name,
                recoverable=response.status_code >= 500,
            )

        try:
            message_id = response.json().get("messageId")
        except ValueError:
            message_id = None
        logger.info("Job published to QStash", job_id=job.job_id, message_id=message_id)
        return None


class RedisListBackend(QueueBackend):
    """
    Acked Redis queue.

    Jobs are LPUSHed onto REDIS_QUEUE_KEY. A worker BLMOVEs each one onto
    REDIS_INFLIGHT_KEY, processes it and removes it. Anything left in flight
    by a dead worker is pushed back, flagged redelivered, on the next start.
    """

    name = "redis"

    def __init__(
        self,
        redis: FastRedisClient,
        queue_key: str = REDIS_QUEUE_KEY,
        inflight_key: str = REDIS_INFLIGHT_KEY,
    ):
        self.redis = redis
        self.queue_key = queue_key
        self.inflight_key = inflight_key

    async def submit(self, job: ReportJob, deliver: Deliver) -> JobResult | None:
        try:
            await self.redis.push_to_list(self.queue_key, json.dumps(job_envelope(job)))
        except Exception as e:
            raise QueuePublishError(f"Redis enqueue failed: {e}", self.name) from e
        logger.info("Job pushed to Redis queue", job_id=job.job_id)
        return None

    async def pop(self, timeout: int = 5) -> str | None:
        return await self.redis.pop_to_inflight(self.queue_key, self.inflight_key, timeout=timeout)

    async def ack(self, raw: str) -> None:
        await self.redis.ack_from_inflight(self.inflight_key, raw)

    async def requeue(self, raw: str) -> None:
        """Move an in-flight job to the back of the queue, flagged redelivered."""
        envelope = json.loads(raw)
        envelope["redelivered"] = True
        await self.redis.push_to_list(self.queue_key, json.dumps(envelope))
        await self.redis.ack_from_inflight(self.inflight_key, raw)

    async def recover_inflight(self) -> int:
        """Push jobs abandoned in flight back onto the queue, marked redelivered."""
        recovered = 0
        for raw in await self.redis.list_range(self.inflight_key):
            try:
                envelope = json.loads(raw)
                envelope["redelivered"] = True
                await self.redis.push_to_list(self.queue_key, json.dumps(envelope), left=False)
            except json.JSONDecodeError:
                logger.error("Dropping malformed in-flight job", raw=raw[:200])
            await self.redis.ack_from_inflight(self.inflight_key, raw)
            recovered += 1

        if recovered:
            logger.warning("Recovered in-flight jobs", count=recovered)
        return recovered

    async def depth(self) -> dict[str, int]:
        return {
            "queued": await self.redis.list_length(self.queue_key),
            "inflight": await self.redis.list_length(self.inflight_key),
        }


def build_backend(config: Settings = settings) -> QueueBackend:
    if config.QUEUE_BACKEND == "qstash":
        return QStashBackend(
            token=config.QSTASH_TOKEN,
            base_url=config.QSTASH_URL,
            callback_url=config.webhook_url(),
        )
    if config.QUEUE_BACKEND == "redis":
        return RedisListBackend(fast_redis)
    return InlineBackend()
