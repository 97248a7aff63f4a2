"""
Lightweight async job scheduler for deferred order processing.
Provides bounded concurrency for background collector jobs.
"""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional, Set


class PipelineScheduler:
    """Simple semaphore-backed task scheduler for async FBT work."""

    def __init__(self, max_concurrency: Optional[int] = None) -> None:
        self._logger = logging.getLogger(__name__)
        self._concurrency = max_concurrency or int(
            os.getenv("FBT_DEFERRED_CONCURRENCY", "2")
        )
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, coro_factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
        """Schedule coroutine factory to run under semaphore."""
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._concurrency)
        semaphore = self._semaphore

        async def _runner() -> None:
            async with semaphore:
                try:
                    self._logger.info(
                        "Executing deferred FBT job | pending=%d",
                        len(self._tasks),
                    )
                    await coro_factory()
                except Exception:
                    self._logger.exception("Deferred FBT job failed")

        task = asyncio.create_task(_runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._logger.info(
            "Deferred FBT job scheduled | active=%d capacity=%d",
            len(self._tasks),
            self._concurrency,
        )
        return task

    async def drain(self) -> None:
        """Wait for every scheduled job (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


pipeline_scheduler = PipelineScheduler()
