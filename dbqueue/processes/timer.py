"""
Background timers run alongside a process loop.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ErrorHandler = Callable[[BaseException], None]


def run_every(
    interval: float,
    callback: Callable[[], Awaitable[object]],
    on_error: ErrorHandler,
    name: str | None = None,
    run_now: bool = False,
) -> asyncio.Task:
    """
    Run a coroutine function every interval seconds until cancelled.

    Errors raised by the callback go to on_error and the timer keeps
    running.

    Args:
        interval: Seconds between runs.
        callback: Coroutine function to run.
        on_error: Receives any exception raised by the callback.
        name: Task name, for debugging.
        run_now: Run once immediately before the first wait.

    Returns:
        The timer task. Cancel it to stop the timer.
    """
    async def _loop() -> None:
        if run_now:
            await _run_once()
        while True:
            await asyncio.sleep(interval)
            await _run_once()

    async def _run_once() -> None:
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            on_error(e)

    return asyncio.create_task(_loop(), name=name)


def run_at(
    delay: float,
    callback: Callable[[], Awaitable[object]],
    on_error: ErrorHandler,
    name: str | None = None,
) -> asyncio.Task:
    """Run a coroutine function once, delay seconds from now."""
    async def _fire() -> None:
        await asyncio.sleep(max(delay, 0))
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            on_error(e)

    return asyncio.create_task(_fire(), name=name)


async def cancel_timers(tasks: list[asyncio.Task]) -> None:
    """Cancel timer tasks and wait for them to finish."""
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
