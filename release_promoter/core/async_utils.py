"""
Async helpers

Bounded retry with exponential backoff and thread offload for blocking SDK calls.
"""

import asyncio
import functools
from typing import Any, Callable, Coroutine, Optional, TypeVar

from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    func: Callable[..., Coroutine[Any, Any, T]],
    *args,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    **kwargs,
) -> T:
    """Run an async callable, retrying on the given exception types

    Args:
        func: async callable
        max_attempts: total attempts including the first one
        delay: initial wait in seconds
        backoff: multiplier applied to the wait after each failure
        exceptions: exception types worth retrying; anything else propagates at once
        on_retry: called with (attempt number, error) before each wait
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    for attempt in range(1, max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except exceptions as e:
            if attempt == max_attempts:
                raise

            wait_time = delay * (backoff ** (attempt - 1))
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed: {e}. "
                f"Retrying in {wait_time:.1f}s..."
            )
            if on_retry:
                on_retry(attempt, e)
            await asyncio.sleep(wait_time)

    raise AssertionError("unreachable")


async def run_blocking(func: Callable[..., T], *args, **kwargs) -> T:
    """Run a blocking SDK call in the default executor"""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
