"""
Idempotent report job queue.

enqueue() is what triggers call; handle_delivery() is what every transport
ends in (inline call, signed webhook, Redis worker). handle_delivery claims
the job id in the dedup cache, then runs the handler under the concurrency
semaphore with a per-attempt deadline and exponential backoff on transient
failures.
"""

import asyncio
import math
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from pydantic import ValidationError

from app.config import Settings, settings
from app.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
)
from app.models.domain.report_domain import (
    EnqueueResult,
    EnqueueStatus,
    JobResult,
    JobState,
    JobStatus,
    ReportJob,
)
from app.services.infrastructure.redis_client import fast_redis
from app.services.queue.backends import QueueBackend, QueuePublishError, build_backend
from app.services.queue.dedup import DedupCache, InMemoryDedupCache, RedisDedupCache
from app.services.queue.errors import JobInProgressError, TerminalJobError
from app.services.queue.status_store import (
    InMemoryJobStatusStore,
    JobStatusStore,
    RedisJobStatusStore,
)

logger = get_logger(__name__)

ALREADY_PROCESSED = "already processed"
NO_VALID_INTEGRATIONS = "no valid integrations"
JOB_IN_PROGRESS = "job already in progress"

JobHandler = Callable[[ReportJob], Awaitable[JobResult]]
IntegrationPrecheck = Callable[[str], Awaitable[bool]]


def is_terminal_error(error: BaseException) -> bool:
    """Errors that will fail the same way on every retry."""
    if isinstance(error, TerminalJobError | ValidationError):
        return True
    return getattr(error, "recoverable", True) is False


class ReportJobQueue:
    def __init__(
        self,
        handler: JobHandler,
        backend: QueueBackend,
        dedup: DedupCache,
        status_store: JobStatusStore,
        precheck: IntegrationPrecheck | None = None,
        max_attempts: int = 3,
        retry_base_delay: float = 2.0,
        job_timeout: float = 60.0,
        concurrency: int = 5,
    ):
        self.handler = handler
        self.backend = backend
        self.dedup = dedup
        self.status_store = status_store
        self.precheck = precheck
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.job_timeout = job_timeout
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def stale_after(self) -> float:
        """Longest gap between status updates of a live job: one attempt plus the top backoff."""
        return self.job_timeout + self.retry_base_delay * 2 ** max(self.max_attempts - 2, 0)

    # ------------------------------------------------------------------
    # Trigger side
    # ------------------------------------------------------------------

    async def enqueue(self, job: ReportJob) -> EnqueueResult:
        """
        Accept a job from a trigger.

        Inline backends return the finished job's result. Other backends
        return `enqueued` once the transport has the job; a job id that was
        already claimed returns `skipped` without touching the transport.
        """
        if await self.dedup.seen(job.job_id):
            logger.info("Duplicate job id on enqueue", job_id=job.job_id)
            return EnqueueResult(
                status=EnqueueStatus.SKIPPED, job_id=job.job_id, reason=ALREADY_PROCESSED
            )

        if self.precheck is not None and not await self.precheck(job.user_id):
            logger.info("Job rejected by integration precheck", job_id=job.job_id, user_id=job.user_id)
            return EnqueueResult(
                status=EnqueueStatus.REJECTED, job_id=job.job_id, reason=NO_VALID_INTEGRATIONS
            )

        await self._record(job, JobStatus.PENDING)

        try:
            result = await self.backend.submit(job, self.handle_delivery)
        except QueuePublishError as e:
            logger.error(
                "Failed to publish job",
                job_id=job.job_id,
                backend=e.backend,
                error=str(e),
            )
            await self._record(job, JobStatus.FAILED, error=str(e))
            return EnqueueResult(status=EnqueueStatus.REJECTED, job_id=job.job_id, reason=str(e))

        if result is None:
            return EnqueueResult(status=EnqueueStatus.ENQUEUED, job_id=job.job_id)
        return EnqueueResult.from_job_result(result)

    async def get_job_status(self, job_id: str) -> JobState | None:
        return await self.status_store.get(job_id)

    # ------------------------------------------------------------------
    # Delivery side
    # ------------------------------------------------------------------

    async def handle_delivery(self, job: ReportJob, redelivered: bool = False) -> JobResult:
        """
        Process one delivery of a job.

        A job id already claimed short-circuits to skipped. The exception is a
        redelivery of a job whose recorded state never reached a terminal
        status. If that state has not been touched for stale_after seconds its
        worker died, so it runs again (safe, the orchestrator is idempotent per
        report). A fresher state means the first delivery is still running and
        JobInProgressError is raised so the transport redelivers later.
        """
        if not await self.dedup.claim(job.job_id):
            state = await self.status_store.get(job.job_id)
            if not redelivered or (state is not None and state.status.is_terminal):
                logger.info("Job already processed, skipping", job_id=job.job_id)
                return JobResult(
                    status=JobStatus.SKIPPED, job_id=job.job_id, reason=ALREADY_PROCESSED
                )
            if state is not None:
                idle = (datetime.now(UTC) - state.updated_at).total_seconds()
                if idle < self.stale_after:
                    logger.info(
                        "Redelivered job still in progress",
                        job_id=job.job_id,
                        status=state.status.value,
                        idle_seconds=round(idle, 1),
                    )
                    raise JobInProgressError(
                        JOB_IN_PROGRESS,
                        job_id=job.job_id,
                        retry_after=max(1, math.ceil(self.stale_after - idle)),
                    )
            logger.warning("Resuming abandoned job", job_id=job.job_id)

        async with self._semaphore:
            bind_job_context(job.job_id, job.user_id, job.report_type.value)
            try:
                return await self._run_with_retries(job)
            finally:
                clear_job_context()

    async def _run_with_retries(self, job: ReportJob) -> JobResult:
        last_error = "unknown error"

        for attempt in range(1, self.max_attempts + 1):
            job.attempts = attempt
            await self._record(job, JobStatus.PROCESSING)

            try:
                result = await asyncio.wait_for(self.handler(job), timeout=self.job_timeout)
            except TimeoutError:
                last_error = f"job timed out after {self.job_timeout}s"
                logger.warning("Job attempt timed out", job_id=job.job_id, attempt=attempt)
            except Exception as e:
                last_error = str(e) or type(e).__name__
                if is_terminal_error(e):
                    logger.error(
                        "Job failed permanently",
                        job_id=job.job_id,
                        attempt=attempt,
                        error=last_error,
                        error_type=type(e).__name__,
                    )
                    return await self._finish_failed(job, last_error)
                logger.warning(
                    "Job attempt failed",
                    job_id=job.job_id,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=last_error,
                    error_type=type(e).__name__,
                )
            else:
                await self._record(
                    job, result.status, error=result.reason, report_id=result.report_id
                )
                return result

            if attempt < self.max_attempts:
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.info("Retrying job", job_id=job.job_id, next_attempt=attempt + 1, delay=delay)
                await asyncio.sleep(delay)

        return await self._finish_failed(job, last_error)

    async def _finish_failed(self, job: ReportJob, error: str) -> JobResult:
        await self._record(job, JobStatus.FAILED, error=error)
        return JobResult(status=JobStatus.FAILED, job_id=job.job_id, reason=error)

    async def _record(
        self,
        job: ReportJob,
        status: JobStatus,
        error: str | None = None,
        report_id: str | None = None,
    ) -> None:
        state = JobState(
            job_id=job.job_id,
            status=status,
            user_id=job.user_id,
            report_type=job.report_type,
            attempts=job.attempts,
            error=error,
            report_id=report_id,
        )
        try:
            await self.status_store.save(state)
        except Exception as e:
            # Status is operator bookkeeping; losing one update must not fail the job
            logger.warning("Failed to record job status", job_id=job.job_id, error=str(e))


def build_job_queue(
    handler: JobHandler,
    precheck: IntegrationPrecheck | None = None,
    config: Settings = settings,
) -> ReportJobQueue:
    """Wire the queue from settings. Redis-backed state whenever REDIS_URL is set."""
    if config.REDIS_URL:
        dedup: DedupCache = RedisDedupCache(fast_redis, config.JOB_DEDUP_TTL_SECONDS)
        status_store: JobStatusStore = RedisJobStatusStore(fast_redis, config.JOB_STATUS_TTL_SECONDS)
    else:
        if config.QUEUE_BACKEND != "inline":
            raise ValueError(f"QUEUE_BACKEND={config.QUEUE_BACKEND} requires REDIS_URL")
        dedup = InMemoryDedupCache(config.JOB_DEDUP_TTL_SECONDS)
        status_store = InMemoryJobStatusStore(config.JOB_STATUS_TTL_SECONDS)

    return ReportJobQueue(
        handler=handler,
        backend=build_backend(config),
        dedup=dedup,
        status_store=status_store,
        precheck=precheck,
        max_attempts=config.JOB_MAX_ATTEMPTS,
        retry_base_delay=config.JOB_RETRY_BASE_DELAY,
        job_timeout=config.JOB_TIMEOUT_SECONDS,
        concurrency=config.JOB_CONCURRENCY,
    )


_queue: ReportJobQueue | None = None


def get_job_queue() -> ReportJobQueue:
    """Process-wide queue wired to the report orchestrator."""
    global _queue
    if _queue is None:
        from app.services.report_orchestrator import get_report_orchestrator
        from app.services.token_lifecycle_service import get_token_lifecycle_manager

        _queue = build_job_queue(
            handler=get_report_orchestrator().process,
            precheck=get_token_lifecycle_manager().has_valid_integrations,
        )
    return _queue
