"""Bounded fire-and-forget background work."""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

MAX_RETRIES = 2


class BackgroundTaskRunner:
    """
    Runs detached coroutines off the request path.

    Each job runs in its own ``asyncio.Task`` behind a semaphore (``concurrency``
    jobs at once), inside an error boundary: failures are logged and swallowed,
    never propagated to whoever spawned the job. Retries are bounded
    (at most ``MAX_RETRIES``) with exponential backoff.
    """

    def __init__(self, concurrency: int = 4, backoff_seconds: float = 0.3) -> None:
        self._semaphore = asyncio.Semaphore(concurrency)
        self._backoff_seconds = backoff_seconds
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        """Jobs spawned and not yet finished."""
        return len(self._tasks)

    def spawn(
        self,
        name: str,
        job: Callable[[], Awaitable[Any]],
        retries: int = 0,
    ) -> asyncio.Task[None] | None:
        """
        Schedule ``job`` and return immediately.

        Args:
            name: Label used in log lines.
            job: Zero-argument callable returning an awaitable; called again on retry.
            retries: Extra attempts after a failure (clamped to MAX_RETRIES).

        Returns:
            The task, or None when the runner is closed.
        """
        if self._closed:
            logger.debug("background_job_dropped name=%s (runner closed)", name)
            return None
        task = asyncio.create_task(self._run(name, job, min(max(retries, 0), MAX_RETRIES)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, job: Callable[[], Awaitable[Any]], retries: int) -> None:
        attempt = 0
        while True:
            try:
                async with self._semaphore:
                    await job()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if attempt >= retries:
                    logger.warning("background_job_failed name=%s: %s", name, e)
                    return
                delay = self._backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.info(
                    "background_job_retry name=%s attempt=%d delay=%.2fs: %s",
                    name,
                    attempt,
                    delay,
                    e,
                )
                await asyncio.sleep(delay)

    async def drain(self) -> None:
        """Wait until every spawned job (including jobs spawned meanwhile) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop accepting jobs and cancel the ones still running."""
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Background runner closed (cancelled=%d)", len(tasks))
