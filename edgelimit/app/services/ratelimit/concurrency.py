"""asyncio helpers for racing and background work.

Losing tasks in a race are never cancelled: they keep running so their
results can still feed caches, reconciliation and analytics.
"""

import asyncio
import logging
from typing import Any, Awaitable, Coroutine, Optional, TypeVar

from edgelimit.app.exceptions import RegionsUnavailableError
from edgelimit.app.services.ratelimit.models import RESOLVED

logger = logging.getLogger(__name__)

T = TypeVar("T")

# The event loop only keeps weak references to tasks; hold strong ones here
# until each background task finishes.
_background_tasks: set[asyncio.Task] = set()


def spawn(coro: Coroutine[Any, Any, T], name: Optional[str] = None) -> asyncio.Task:
    """Schedule a coroutine as a background task and keep it alive until done."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def background_task_count() -> int:
    return len(_background_tasks)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Marks the exception as retrieved for losers nobody awaits.
    if not task.cancelled():
        task.exception()


async def first_success(tasks: list[asyncio.Task]) -> Any:
    """Return the result of the first task that completes without raising.

    Remaining tasks are left running. If every task fails,
    ``RegionsUnavailableError`` is raised with the errors in task order.
    """
    for task in tasks:
        task.add_done_callback(_retrieve_exception)

    remaining = set(tasks)
    while remaining:
        done, remaining = await asyncio.wait(remaining, return_when=asyncio.FIRST_COMPLETED)
        for task in tasks:
            if task in done and not task.cancelled() and task.exception() is None:
                return task.result()

    errors: list[BaseException] = []
    for task in tasks:
        if task.cancelled():
            errors.append(asyncio.CancelledError())
        else:
            errors.append(task.exception())
    raise RegionsUnavailableError(errors)


async def _swallow(awaitable: Awaitable[Any], description: str) -> None:
    try:
        await awaitable
    except Exception as e:
        logger.warning(f"Background {description} failed: {e}")


def isolate(awaitable: Awaitable[Any], description: str) -> asyncio.Task:
    """Run an awaitable in the background, logging instead of raising its errors."""
    return spawn(_swallow(awaitable, description), name=description)


def gather_pending(*pending: Awaitable[Any]) -> Awaitable[Any]:
    """Fold several pending awaitables into one.

    Already resolved placeholders are dropped so the common case allocates
    nothing.
    """
    live = [p for p in pending if p is not None and p is not RESOLVED]
    if not live:
        return RESOLVED
    if len(live) == 1:
        return live[0]
    return asyncio.gather(*live)

