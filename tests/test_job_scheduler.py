from __future__ import annotations

import pytest

from debug_monitor.scheduler import JobScheduler, parse_cron


def test_parse_cron_requires_five_fields() -> None:
    assert parse_cron("*/15 * * * *") is not None
    with pytest.raises(ValueError):
        parse_cron("*/15 * * *")
    with pytest.raises(ValueError):
        parse_cron("0 0 * * * *")


@pytest.mark.asyncio
async def test_job_lifecycle() -> None:
    scheduler = JobScheduler()
    calls = []

    async def job(tag: str) -> None:
        calls.append(tag)

    await scheduler.start()
    try:
        scheduler.add_interval_job("tick", job, interval_ms=3_600_000, args=("tick",), description="Tick")
        scheduler.add_cron_job("nightly", job, "0 3 * * *", args=("nightly",))

        status = scheduler.get_job_status("tick")
        assert status["type"] == "interval"
        assert status["next_run"] is not None
        assert {j["job_id"] for j in scheduler.list_jobs()} == {"tick", "nightly"}
        assert scheduler.get_scheduler_status()["job_count"] == 2

        assert scheduler.pause_job("tick")
        assert scheduler.get_job_status("tick")["paused"] is True
        assert scheduler.resume_job("tick")

        assert await scheduler.run_job_once("nightly")
        assert calls == ["nightly"]

        assert scheduler.remove_job("tick")
        assert not scheduler.remove_job("tick")
        assert scheduler.get_job_status("tick") is None
        assert not await scheduler.run_job_once("tick")
    finally:
        await scheduler.stop()

    assert scheduler.running is False
    assert scheduler.jobs == {}


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent() -> None:
    scheduler = JobScheduler()
    await scheduler.start()
    await scheduler.start()
    await scheduler.stop()
    await scheduler.stop()
    assert scheduler.get_scheduler_status()["running"] is False


@pytest.mark.asyncio
async def test_failing_job_is_counted_not_raised() -> None:
    scheduler = JobScheduler()

    async def boom() -> None:
        raise RuntimeError("boom")

    scheduler.add_interval_job("boom", boom, interval_ms=60_000)

    assert not await scheduler.run_job_once("boom")
    status = scheduler.get_job_status("boom")
    assert status["failures"] == 1
    assert status["last_error"] == "boom"
    assert status["schedule"] == "60000"

    with pytest.raises(ValueError):
        scheduler.add_interval_job("never", boom, interval_ms=0)
