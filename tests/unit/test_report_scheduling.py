"""
Tests for scheduled fan-out and the scheduler's timing helpers.
"""

from datetime import UTC, date, datetime

import pytest

from app.jobs import report_scheduler
from app.jobs.report_scheduler import next_run_at, report_types_for, run_scheduled_reports
from app.models.domain.report_domain import (
    EnqueueResult,
    EnqueueStatus,
    JobResult,
    JobStatus,
    ReportJob,
    ReportType,
)
from app.services.queue.backends import InlineBackend
from app.services.queue.dedup import InMemoryDedupCache
from app.services.queue.job_queue import ReportJobQueue
from app.services.queue.status_store import InMemoryJobStatusStore
from app.services.report_scheduling_service import FanOutSummary, enqueue_scheduled_reports

MONDAY = date(2024, 3, 4)


@pytest.fixture
def handled():
    return []


@pytest.fixture
def job_queue(handled):
    async def handler(job: ReportJob) -> JobResult:
        handled.append(job.job_id)
        return JobResult(status=JobStatus.COMPLETED, job_id=job.job_id)

    return ReportJobQueue(
        handler=handler,
        backend=InlineBackend(),
        dedup=InMemoryDedupCache(3600),
        status_store=InMemoryJobStatusStore(3600),
        retry_base_delay=0,
    )


@pytest.fixture
def users(token_store):
    token_store.add(email="a@example.com", user_id="user-a", provider="fitbit", access_token="x")
    token_store.add(email="b@example.com", user_id="user-b", provider="gmail", access_token="y")
    token_store.add(
        email="c@example.com",
        user_id="user-c",
        provider="gmail",
        access_token="z",
        needs_reconnection=True,
    )
    return token_store


@pytest.mark.asyncio
async def test_fan_out_uses_deterministic_job_ids(users, job_queue, handled):
    summary = await enqueue_scheduled_reports(ReportType.DAILY, MONDAY, queue=job_queue, store=users)

    assert summary.counts == {"completed": 2}
    assert sorted(handled) == ["daily-user-a-2024-03-04", "daily-user-b-2024-03-04"]


@pytest.mark.asyncio
async def test_second_fan_out_for_same_date_is_absorbed(users, job_queue, handled):
    await enqueue_scheduled_reports(ReportType.DAILY, MONDAY, queue=job_queue, store=users)
    again = await enqueue_scheduled_reports(ReportType.DAILY, MONDAY, queue=job_queue, store=users)

    assert again.counts == {"skipped": 2}
    assert len(handled) == 2


@pytest.mark.asyncio
async def test_invalid_user_becomes_rejected_result(token_store, job_queue, handled):
    token_store.add(email="not-an-email", user_id="user-x", provider="fitbit", access_token="x")

    summary = await enqueue_scheduled_reports(
        ReportType.WEEKLY, MONDAY, queue=job_queue, store=token_store
    )

    assert summary.counts == {"rejected": 1}
    assert summary.results[0].job_id == "weekly-user-x-2024-03-04"
    assert handled == []


def test_next_run_at():
    morning = datetime(2024, 3, 4, 5, 30, tzinfo=UTC)
    evening = datetime(2024, 3, 4, 7, 0, tzinfo=UTC)

    assert next_run_at(morning, hour=6) == datetime(2024, 3, 4, 6, 0, tzinfo=UTC)
    assert next_run_at(evening, hour=6) == datetime(2024, 3, 5, 6, 0, tzinfo=UTC)


def test_weekly_only_on_configured_weekday():
    assert report_types_for(datetime(2024, 3, 4), weekly_weekday=0) == [
        ReportType.DAILY,
        ReportType.WEEKLY,
    ]
    assert report_types_for(datetime(2024, 3, 5), weekly_weekday=0) == [ReportType.DAILY]


@pytest.mark.asyncio
async def test_run_scheduled_reports(monkeypatch):
    calls = []

    async def fake_enqueue(report_type, report_date):
        calls.append((report_type, report_date))
        return FanOutSummary(
            report_type,
            report_date,
            [EnqueueResult(status=EnqueueStatus.COMPLETED, job_id=f"{report_type.value}-u")],
        )

    monkeypatch.setattr(report_scheduler, "enqueue_scheduled_reports", fake_enqueue)
    monkeypatch.setattr(report_scheduler.settings, "WEEKLY_REPORT_WEEKDAY", 0)

    summaries = await run_scheduled_reports(datetime(2024, 3, 4, 6, 0, tzinfo=UTC))

    assert summaries == {"daily": {"completed": 1}, "weekly": {"completed": 1}}
    assert calls == [(ReportType.DAILY, MONDAY), (ReportType.WEEKLY, MONDAY)]
