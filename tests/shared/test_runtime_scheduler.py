import asyncio
import logging

import pytest

from modules.common import runtime


def test_scheduler_job_exception_does_not_cancel(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def runner() -> None:
        scheduler = runtime.Scheduler()

        attempt = {"count": 0}

        async def maybe_fail() -> None:
            attempt["count"] += 1
            if attempt["count"] == 1:
                raise RuntimeError("boom")

        def fast_next_run(self, reference=None):
            now = reference or runtime.datetime.now(runtime.timezone.utc)
            return now + runtime.timedelta(milliseconds=10)

        monkeypatch.setattr(runtime._RecurringJob, "_compute_next_run", fast_next_run)

        caplog.set_level(logging.ERROR, logger="dtm.runtime")

        job = scheduler.every(seconds=1, name="test_job")
        job.do(maybe_fail)

        await asyncio.sleep(0.1)
        await scheduler.shutdown()

        assert attempt["count"] >= 2
        assert job.last_error is None
        assert scheduler.jobs["test_job"] is job
        assert any("recurring job error" in record.message for record in caplog.records)

    asyncio.run(runner())


def test_run_immediately_skips_first_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    async def runner() -> int:
        scheduler = runtime.Scheduler()
        calls = {"count": 0}

        async def job() -> None:
            calls["count"] += 1

        scheduler.every(hours=1, name="poll", run_immediately=True).do(job)
        await asyncio.sleep(0.05)
        await scheduler.shutdown()
        return calls["count"]

    assert asyncio.run(runner()) == 1


def test_zero_interval_falls_back_to_a_minute() -> None:
    scheduler = runtime.Scheduler()
    job = scheduler.every(seconds=0)
    reference = runtime.datetime(2025, 3, 1, 12, 0, 30, tzinfo=runtime.timezone.utc)
    assert job._compute_next_run(reference) == runtime.datetime(
        2025, 3, 1, 12, 1, 0, tzinfo=runtime.timezone.utc
    )
