"""Tests for the background task runner."""
import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from services.background import MAX_RETRIES, BackgroundTaskRunner


class TestSpawn:
    """Fire-and-forget semantics."""

    async def test__spawn__runs_job_off_the_caller(self, runner: BackgroundTaskRunner) -> None:
        """The job runs after spawn returns."""
        job = AsyncMock()
        task = runner.spawn("job", job)

        assert task is not None
        await runner.drain()
        job.assert_awaited_once()
        assert runner.pending == 0

    async def test__spawn__failure_is_logged_not_raised(
        self, runner: BackgroundTaskRunner, caplog: pytest.LogCaptureFixture,
    ) -> None:
        """The error boundary swallows job failures."""
        job = AsyncMock(side_effect=RuntimeError("boom"))

        with caplog.at_level(logging.WARNING):
            task = runner.spawn("failing-job", job)
            await task

        assert task.exception() is None
        assert "background_job_failed name=failing-job" in caplog.text

    async def test__spawn__retries_until_success(self, runner: BackgroundTaskRunner) -> None:
        """Retried jobs are called again after a failure."""
        job = AsyncMock(side_effect=[RuntimeError("flaky"), None])

        await runner.spawn("retry-job", job, retries=1)

        assert job.await_count == 2

    async def test__spawn__retries_are_clamped(self, runner: BackgroundTaskRunner) -> None:
        """No job runs more than 1 + MAX_RETRIES times."""
        job = AsyncMock(side_effect=RuntimeError("always"))

        await runner.spawn("clamped-job", job, retries=10)

        assert job.await_count == 1 + MAX_RETRIES

    async def test__spawn__negative_retries_run_once(self, runner: BackgroundTaskRunner) -> None:
        """Negative retry counts mean no retries."""
        job = AsyncMock(side_effect=RuntimeError("always"))
        await runner.spawn("job", job, retries=-3)
        assert job.await_count == 1

    async def test__spawn__concurrency_is_bounded(self) -> None:
        """At most ``concurrency`` jobs run at once."""
        runner = BackgroundTaskRunner(concurrency=2, backoff_seconds=0)
        running = 0
        peak = 0

        async def job() -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

        for i in range(5):
            runner.spawn(f"job-{i}", job)
        await runner.drain()
        await runner.close()

        assert peak == 2


class TestLifecycle:
    """Drain and close."""

    async def test__drain__waits_for_jobs_spawned_by_jobs(self, runner: BackgroundTaskRunner) -> None:
        """Follow-up jobs are drained too."""
        inner = AsyncMock()

        async def outer() -> None:
            runner.spawn("inner", inner)

        runner.spawn("outer", outer)
        await runner.drain()

        inner.assert_awaited_once()

    async def test__close__cancels_running_jobs_and_rejects_new_ones(self) -> None:
        """A closed runner drops work."""
        runner = BackgroundTaskRunner()
        started = asyncio.Event()

        async def slow() -> None:
            started.set()
            await asyncio.sleep(60)

        task = runner.spawn("slow", slow)
        await started.wait()
        await runner.close()

        assert task.cancelled()
        assert runner.spawn("late", AsyncMock()) is None
        assert runner.pending == 0
