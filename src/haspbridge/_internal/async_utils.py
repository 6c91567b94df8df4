"""Asyncio utilities shared by the bridge, broker and Signal K client."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
from typing import Any, Coroutine


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run an async coroutine from synchronous code (click command bodies)."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)


async def maybe_await(result: Any) -> Any:
    """Await *result* if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(result):
        return await result
    return result


async def cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel *task* and wait for it to finish unwinding.

    Safe to call with ``None`` or an already finished task.  Must not be
    called from inside *task* itself.
    """
    if task is None or task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
