"""Detached background work with its own error channel.

Cache write-back and trace persistence must never slow down or fail the
request that produced them. They run as named asyncio tasks owned by a
``BackgroundTasks`` registry: the registry keeps a reference until the task
finishes, logs any exception the task raised, and lets shutdown code and
tests wait for everything still pending.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """Registry of fire-and-forget tasks that are logged, never awaited inline."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """Start ``coro`` as a detached task named ``name``."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("background_task_cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "background_task_failed",
                task=task.get_name(),
                error_type=type(error).__name__,
                error=str(error),
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every pending task. Failures are already logged."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        await asyncio.wait(pending, timeout=timeout)

    async def cancel_all(self) -> None:
        """Cancel pending tasks and wait for them to unwind."""
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
