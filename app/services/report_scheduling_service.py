"""
Fan-out of scheduled reports.

Every user with at least one valid integration gets one job per
(report_type, date). Job ids are deterministic, so a cron that fires twice
for the same date is absorbed by the queue's dedup cache.
"""

import asyncio
from collections import Counter
from datetime import date

from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import (
    EnqueueResult,
    EnqueueStatus,
    ReportJob,
    ReportType,
    scheduled_job_id,
    utc_today,
)
from app.services.queue.job_queue import ReportJobQueue, get_job_queue
from app.services.token_service import TokenService, token_service

logger = get_logger(__name__)


class FanOutSummary:
    def __init__(self, report_type: ReportType, report_date: date, results: list[EnqueueResult]):
        self.report_type = report_type
        self.report_date = report_date
        self.results = results

    @property
    def counts(self) -> dict[str, int]:
        return dict(Counter(result.status.value for result in self.results))


async def enqueue_scheduled_reports(
    report_type: ReportType,
    report_date: date | None = None,
    queue: ReportJobQueue | None = None,
    store: TokenService | None = None,
) -> FanOutSummary:
    queue = queue or get_job_queue()
    store = store or token_service
    report_date = report_date or utc_today()

    users = await store.users_with_valid_integrations()
    logger.info(
        "Scheduling reports",
        report_type=report_type.value,
        report_date=report_date.isoformat(),
        user_count=len(users),
    )

    async def enqueue_user(user: dict) -> EnqueueResult:
        job_id = scheduled_job_id(report_type, user["user_id"], report_date)
        try:
            job = ReportJob(
                job_id=job_id,
                user_id=user["user_id"],
                user_email=user["email"],
                report_type=report_type,
                report_date=report_date,
            )
            return await queue.enqueue(job)
        except Exception as e:
            logger.error(
                "Failed to enqueue scheduled report",
                job_id=job_id,
                user_id=user["user_id"],
                error=str(e),
                error_type=type(e).__name__,
            )
            return EnqueueResult(status=EnqueueStatus.REJECTED, job_id=job_id, reason=str(e))

    results = await asyncio.gather(*(enqueue_user(user) for user in users))
    summary = FanOutSummary(report_type, report_date, list(results))

    logger.info(
        "Scheduled reports enqueued",
        report_type=report_type.value,
        report_date=report_date.isoformat(),
        **summary.counts,
    )
    return summary
