"""
Fire-and-forget task runner.

Tasks spawned here are detached from the request that started them: the
response does not wait for them and cancelling the request does not cancel
them. Tests await drain() before asserting on their side effects.
"""
import asyncio
from typing import Awaitable, Optional, Set

from core.config import logger

_pending: Set[asyncio.Task] = set()


def spawn(coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    # The loop only keeps weak references to tasks
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    ex = task.exception()
    if ex is not None:
        logger.error(f"[background] Task {task.get_name()} failed: {ex}")


async def drain() -> None:
    """Wait for every pending task that belongs to the running loop."""
    loop = asyncio.get_running_loop()
    while True:
        tasks = [t for t in _pending if t.get_loop() is loop and not t.done()]
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)
