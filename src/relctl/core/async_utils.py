"""Async utilities for remote operations."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from relctl.core.exceptions import TransportError
from relctl.core.logging import StructuredLogger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

logger = StructuredLogger(__name__)


async def gather_with_concurrency(
    n: int,
    *coros: Awaitable[T],
    return_exceptions: bool = False,
) -> list[T]:
    """Run coroutines with limited concurrency.

    Args:
        n: Maximum number of concurrent coroutines
        *coros: Coroutines to run
        return_exceptions: Return raised exceptions in place of results

    Returns:
        List of results in the same order as input
    """
    semaphore = asyncio.Semaphore(n)

    async def sem_coro(coro: Awaitable[T]) -> T:
        async with semaphore:
            return await coro

    return await asyncio.gather(
        *[sem_coro(coro) for coro in coros],
        return_exceptions=return_exceptions,
    )


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff delay for the given zero-based retry attempt."""
    return min(base * (2**attempt), cap)


async def retry_transport(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
    on_retry: Callable[[int, TransportError], None] | None = None,
) -> T:
    """Call ``operation`` retrying only on TransportError.

    Args:
        operation: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry
        max_delay: Cap on any single delay
        sleep: Sleep coroutine (injectable for tests)
        label: Name used in log lines
        on_retry: Called with (retry_number, error) before each retry

    Returns:
        Result of the first successful attempt

    Raises:
        TransportError: When every attempt failed
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransportError as e:
            if attempt >= max_retries:
                logger.error(
                    f"{label} failed after {attempt + 1} attempts",
                    error=e.message,
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            attempt += 1
            if on_retry:
                on_retry(attempt, e)
            logger.warning(
                f"{label} hit a transient error, retrying",
                attempt=attempt,
                delay=delay,
                error=e.message,
            )
            await sleep(delay)


def run_sync(coro: Awaitable[T]) -> T:
    """Run an async function synchronously.

    This is useful for integrating async code with Click commands.

    Args:
        coro: Coroutine to run

    Returns:
        Result of the coroutine
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop: run on a fresh loop in a worker thread
        import concurrent.futures

        with concurrent.futures.ThreadPoolExecutor() as pool:
            future = pool.submit(asyncio.run, coro)
            return future.result()
    else:
        return asyncio.run(coro)
