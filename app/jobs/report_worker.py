"""
Report worker for the Redis queue backend.

Pulls jobs off the Redis list into the in-flight list, runs them through the
job queue's delivery path and acks them. On start, anything a previous
worker left in flight is pushed back as a redelivery.
"""

import asyncio
import json
import signal

from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import ReportJob
from app.services.infrastructure.redis_client import fast_redis
from app.services.queue.backends import RedisListBackend
from app.services.queue.errors import JobInProgressError
from app.services.queue.job_queue import ReportJobQueue, get_job_queue

logger = get_logger(__name__)

POP_TIMEOUT_SECONDS = 5


class ReportWorker:
    def __init__(
        self,
        queue: ReportJobQueue,
        backend: RedisListBackend,
        concurrency: int = settings.JOB_CONCURRENCY,
        requeue_delay: float = POP_TIMEOUT_SECONDS,
    ):
        self.queue = queue
        self.backend = backend
        self.concurrency = concurrency
        self.requeue_delay = requeue_delay
        self._stop = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def stop(self) -> None:
        logger.info("Report worker stop requested")
        self._stop.set()

    async def run(self) -> None:
        await self.backend.recover_inflight()
        slots = asyncio.Semaphore(self.concurrency)
        logger.info("Report worker started", concurrency=self.concurrency)

        while not self._stop.is_set():
            await slots.acquire()
            if self._stop.is_set():
                slots.release()
                break
            try:
                raw = await self.backend.pop(timeout=POP_TIMEOUT_SECONDS)
            except Exception as e:
                slots.release()
                logger.error("Failed to pop job", error=str(e), error_type=type(e).__name__)
                await asyncio.sleep(POP_TIMEOUT_SECONDS)
                continue

            if raw is None:
                slots.release()
                continue

            task = asyncio.create_task(self._process(raw))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(lambda _: slots.release())

        # Let in-flight jobs finish; unacked ones are recovered on next start
        if self._tasks:
            logger.info("Waiting for in-flight jobs", count=len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("Report worker stopped")

    async def _process(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
            job = ReportJob.model_validate(envelope["job"])
        except (ValueError, KeyError, ValidationError) as e:
            logger.error("Dropping malformed job", error=str(e), raw=raw[:200])
            await self.backend.ack(raw)
            return

        try:
            result = await self.queue.handle_delivery(
                job, redelivered=bool(envelope.get("redelivered"))
            )
        except JobInProgressError as e:
            # Another worker still owns it
            await asyncio.sleep(min(self.requeue_delay, e.retry_after))
            await self.backend.requeue(raw)
            logger.info("Requeued job still in progress elsewhere", job_id=job.job_id)
            return
        except Exception as e:
            # Left in flight; recovered and retried on next worker start
            logger.error(
                "Job delivery crashed",
                job_id=job.job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        await self.backend.ack(raw)
        logger.info("Job acked", job_id=job.job_id, status=result.status.value)


async def start_report_worker():
    if not fast_redis.configured:
        raise RuntimeError("report_worker requires REDIS_URL")

    worker = ReportWorker(get_job_queue(), RedisListBackend(fast_redis))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.run()
