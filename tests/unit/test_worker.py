import pytest

from app.jobs import worker


@pytest.fixture
def no_db_pool(monkeypatch):
    events = []

    async def initialize():
        events.append("init")

    async def close():
        events.append("close")

    monkeypatch.setattr(worker.db_pool, "initialize", initialize)
    monkeypatch.setattr(worker.db_pool, "close", close)
    return events


@pytest.mark.asyncio
async def test_run_worker_runs_job(monkeypatch, no_db_pool):
    called = {"ok": False}

    async def dummy_job():
        called["ok"] = True

    monkeypatch.setitem(worker.JOB_REGISTRY, "dummy", dummy_job)

    await worker.run_worker("dummy")

    assert called["ok"] is True
    assert no_db_pool == ["init", "close"]


@pytest.mark.asyncio
async def test_run_worker_closes_pool_on_failure(monkeypatch, no_db_pool):
    async def crashing_job():
        raise RuntimeError("boom")

    monkeypatch.setitem(worker.JOB_REGISTRY, "crashing", crashing_job)

    with pytest.raises(RuntimeError):
        await worker.run_worker("crashing")

    assert no_db_pool == ["init", "close"]


@pytest.mark.asyncio
async def test_run_worker_unknown_job(no_db_pool):
    with pytest.raises(ValueError):
        await worker.run_worker("missing")

    assert no_db_pool == []


def test_registry_lists_report_jobs():
    assert set(worker.JOB_REGISTRY) == {"report_worker", "report_scheduler", "token_refresh"}
