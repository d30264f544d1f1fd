"""
Background dispatcher — fire-and-forget handoffs off the request path

submit() schedules a coroutine on the running loop and returns at once.
Failures never reach the submitter: each task carries a done-callback that
logs the exception (the task's error channel). Strong references are held
until completion so the loop cannot garbage-collect a pending task.

drain() waits for everything in flight; the lifespan hook calls it on
shutdown and tests call it to observe handoff side effects.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class BackgroundDispatcher:

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(
        self,
        factory: Callable[[], Awaitable[Any]],
        *,
        name: str,
        context: dict[str, Any] | None = None,
    ) -> asyncio.Task:
        ctx = dict(context or {})

        async def _run() -> Any:
            return await factory()

        task = asyncio.get_running_loop().create_task(_run(), name=name)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, ctx))
        return task

    def _on_done(self, task: asyncio.Task, ctx: dict[str, Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Background task cancelled | task=%s ctx=%s", task.get_name(), ctx)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed | task=%s ctx=%s error=%s",
                task.get_name(), ctx, exc,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight tasks; on timeout, cancel the stragglers."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            await asyncio.gather(*still_pending, return_exceptions=True)
            logger.warning("Dispatcher drain cancelled %d task(s)", len(still_pending))
