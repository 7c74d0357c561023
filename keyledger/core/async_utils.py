"""
Worker-thread offloading for blocking calls.

The Stripe SDK, SQL sessions and the batch jobs are synchronous. run_sync()
moves them onto the loop's default executor (sized in main.py) under a
deadline, so a slow provider or a locked SQLite file cannot stall webhook
handling. Callers map the resulting TimeoutError onto their own error type.
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_name(func: Callable[..., Any]) -> str:
    """Readable name for logs: unwraps functools.partial, keeps Class.method."""
    while isinstance(func, functools.partial):
        func = func.func
    return getattr(func, "__qualname__", None) or getattr(func, "__name__", None) or repr(func)


async def run_sync(
    func: Callable[..., T],
    *args: Any,
    timeout: float = 30,
    label: Optional[str] = None,
) -> T:
    """
    Run a synchronous callable in a worker thread.

    Args:
        func: Synchronous callable to execute.
        *args: Positional arguments forwarded to func.
        timeout: Seconds to wait before giving up (default 30). The thread
            itself is not cancelled; its result is discarded.
        label: Name used in logs and the timeout message. Defaults to the
            callable's qualified name.

    Raises:
        TimeoutError: If the call exceeds ``timeout``.
        Exception: Anything func raises propagates unchanged.
    """
    name = label or call_name(func)
    start = time.perf_counter()
    try:
        result = await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.warning("run_sync_timeout", extra={"call": name, "timeout_s": timeout, "elapsed_ms": round(elapsed_ms)})
        raise TimeoutError(f"{name} timed out after {elapsed_ms:.0f}ms (limit {timeout}s)") from exc

    logger.debug("run_sync %s completed in %.2fms", name, (time.perf_counter() - start) * 1000)
    return result
