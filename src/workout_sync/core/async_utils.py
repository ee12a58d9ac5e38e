"""Async utilities for bridging blocking I/O into the sync coordinator."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Used for HTTP calls to the provider and for store / key-value file
    writes.  Callers build any shared state they need on the loop thread
    first and hand the worker only immutable data.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        document = store.to_document()
        await run_sync(store.write_document, document)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
