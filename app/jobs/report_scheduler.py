"""
Report scheduler.

Once per day, at DAILY_REPORT_HOUR_UTC, enqueues the daily report fan-out
and, on WEEKLY_REPORT_WEEKDAY, the weekly one. Deterministic job ids make a
second scheduler instance (or a cron hitting /queue/generate-daily) harmless.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.report_domain import ReportType
from app.services.report_scheduling_service import enqueue_scheduled_reports

logger = get_logger(__name__)


def next_run_at(now: datetime, hour: int = settings.DAILY_REPORT_HOUR_UTC) -> datetime:
    """Next occurrence of HH:00 UTC strictly after now."""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def report_types_for(day: datetime, weekly_weekday: int | None = None) -> list[ReportType]:
    if weekly_weekday is None:
        weekly_weekday = settings.WEEKLY_REPORT_WEEKDAY
    types = [ReportType.DAILY]
    if day.weekday() == weekly_weekday:
        types.append(ReportType.WEEKLY)
    return types


async def run_scheduled_reports(now: datetime | None = None) -> dict[str, dict[str, int]]:
    """Enqueue every report type due on now's date."""
    now = now or datetime.now(UTC)
    summaries = {}
    for report_type in report_types_for(now):
        summary = await enqueue_scheduled_reports(report_type, now.date())
        summaries[report_type.value] = summary.counts
    return summaries


async def start_report_scheduler():
    logger.info(
        "Starting report scheduler",
        daily_hour_utc=settings.DAILY_REPORT_HOUR_UTC,
        weekly_weekday=settings.WEEKLY_REPORT_WEEKDAY,
    )

    while True:
        now = datetime.now(UTC)
        run_at = next_run_at(now)
        logger.info("Next report run scheduled", run_at=run_at.isoformat())
        await asyncio.sleep((run_at - now).total_seconds())

        try:
            summaries = await run_scheduled_reports(run_at)
            logger.info("Scheduled report run completed", **summaries)
        except Exception as e:
            logger.error(
                "Scheduled report run failed", error=str(e), error_type=type(e).__name__
            )
