"""Side tasks run off the request path, such as outgoing mail."""

import asyncio
from typing import Coroutine, Optional

import structlog

logger = structlog.get_logger(__name__)

_pending_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _pending_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("background_task_failed", task=task.get_name(), error=str(error))


def schedule_task(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """Start ``coro`` as a tracked task. Failures are logged, never raised."""
    task = asyncio.create_task(coro, name=name)
    _pending_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


async def await_pending_tasks(timeout: float = 5.0) -> None:
    """Wait up to ``timeout`` seconds for tracked tasks; used at shutdown and by tests."""
    if not _pending_tasks:
        return

    logger.info("draining_background_tasks", count=len(_pending_tasks))
    try:
        await asyncio.wait_for(
            asyncio.gather(*_pending_tasks, return_exceptions=True),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("background_tasks_timeout", remaining=len(_pending_tasks), timeout=timeout)
