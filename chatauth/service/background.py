from __future__ import annotations

import asyncio
from typing import Coroutine, Set

from chatauth.logging import get_logger
from chatauth.service.errors import MaintenanceFailure

logger = get_logger(__name__)

# Strong references; the event loop only keeps weak ones to running tasks.
_tasks: Set[asyncio.Task] = set()


def spawn(coro: Coroutine, *, name: str | None = None) -> asyncio.Task:
    """Run ``coro`` detached from the caller and log how it ends."""

    task = asyncio.get_running_loop().create_task(coro, name=name)
    _tasks.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _tasks.discard(task)
    if task.cancelled():
        logger.info("background_task_cancelled", task=task.get_name())
        return
    exc = task.exception()
    if exc is None:
        return
    if isinstance(exc, MaintenanceFailure):
        logger.warning(
            exc.event,
            lookup_id=exc.lookup_id,
            reason=exc.reason,
        )
        return
    logger.error(
        "background_task_failed",
        task=task.get_name(),
        error=str(exc),
        error_type=type(exc).__name__,
    )


def pending() -> int:
    return len(_tasks)


async def drain(timeout: float | None = None) -> None:
    """Wait for every detached task started so far.

    Tasks still running after ``timeout`` are cancelled.
    """

    if not _tasks:
        return
    current = list(_tasks)
    _, still_running = await asyncio.wait(current, timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        await asyncio.gather(*still_running, return_exceptions=True)
        logger.warning("background_tasks_cancelled", count=len(still_running))
