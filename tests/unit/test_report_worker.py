"""
Tests for the Redis-backed report worker loop.
"""

import asyncio
import json
from datetime import date

import pytest

from app.jobs.report_worker import ReportWorker
from app.models.domain.report_domain import JobResult, JobState, JobStatus, ReportJob
from app.services.queue.backends import InlineBackend, RedisListBackend, job_envelope
from app.services.queue.dedup import InMemoryDedupCache
from app.services.queue.job_queue import ReportJobQueue
from app.services.queue.status_store import InMemoryJobStatusStore


def make_job(job_id: str = "job-1") -> ReportJob:
    return ReportJob(
        job_id=job_id, user_id="user-1", user_email="user@example.com", report_date=date(2024, 3, 1)
    )


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


@pytest.mark.asyncio
async def test_process_runs_and_acks(fake_redis, job_queue, handled):
    backend = RedisListBackend(fake_redis)
    raw = json.dumps(job_envelope(make_job()))
    fake_redis.lists[backend.inflight_key] = [raw]

    await ReportWorker(job_queue, backend)._process(raw)

    assert handled == ["job-1"]
    assert fake_redis.lists[backend.inflight_key] == []


@pytest.mark.asyncio
async def test_malformed_job_is_dropped(fake_redis, job_queue, handled):
    backend = RedisListBackend(fake_redis)
    fake_redis.lists[backend.inflight_key] = ["not json", json.dumps({"job": {"job_id": ""}})]

    worker = ReportWorker(job_queue, backend)
    await worker._process("not json")
    await worker._process(json.dumps({"job": {"job_id": ""}}))

    assert handled == []
    assert fake_redis.lists[backend.inflight_key] == []


@pytest.mark.asyncio
async def test_crashed_delivery_stays_inflight(fake_redis, job_queue):
    backend = RedisListBackend(fake_redis)
    raw = json.dumps(job_envelope(make_job()))
    fake_redis.lists[backend.inflight_key] = [raw]

    async def crash(job, redelivered=False):
        raise ConnectionError("redis went away")

    job_queue.handle_delivery = crash

    await ReportWorker(job_queue, backend)._process(raw)

    assert fake_redis.lists[backend.inflight_key] == [raw]


@pytest.mark.asyncio
async def test_run_recovers_and_drains_queue(fake_redis, job_queue, handled):
    backend = RedisListBackend(fake_redis)
    # One job abandoned by a dead worker, one freshly queued
    fake_redis.lists[backend.inflight_key] = [json.dumps(job_envelope(make_job("job-abandoned")))]
    await backend.submit(make_job("job-new"), job_queue.handle_delivery)

    worker = ReportWorker(job_queue, backend, concurrency=2)
    task = asyncio.create_task(worker.run())

    for _ in range(200):
        if len(handled) == 2:
            break
        await asyncio.sleep(0.01)
    worker.stop()
    await asyncio.wait_for(task, timeout=2)

    assert sorted(handled) == ["job-abandoned", "job-new"]
    assert await backend.depth() == {"queued": 0, "inflight": 0}


@pytest.mark.asyncio
async def test_job_running_elsewhere_is_requeued(fake_redis, job_queue, handled):
    backend = RedisListBackend(fake_redis)
    raw = json.dumps(job_envelope(make_job(), redelivered=True))
    fake_redis.lists[backend.inflight_key] = [raw]
    # Another worker claimed the job and is still inside its first attempt
    await job_queue.dedup.claim("job-1")
    await job_queue.status_store.save(JobState(job_id="job-1", status=JobStatus.PROCESSING))

    await ReportWorker(job_queue, backend, requeue_delay=0)._process(raw)

    assert handled == []
    assert fake_redis.lists[backend.inflight_key] == []
    [requeued] = fake_redis.lists[backend.queue_key]
    assert json.loads(requeued)["redelivered"] is True
