import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List, Set

logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


def spawn_background(
    coro: Awaitable,
    registry: Set[asyncio.Task],
    name: Optional[str] = None,
) -> asyncio.Task:
    """Schedule a detached task, keep a strong reference and log its failure."""
    task = asyncio.ensure_future(coro)
    label = name or repr(coro)
    registry.add(task)

    def _done(t: asyncio.Task) -> None:
        registry.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error("Background task %s failed: %s", label, exc, exc_info=exc)

    task.add_done_callback(_done)
    return task


async def cancel_all(registry: Set[asyncio.Task]) -> None:
    current = asyncio.current_task()
    pending = [t for t in registry if not t.done() and t is not current]
    for t in pending:
        t.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    for t in pending:
        registry.discard(t)
