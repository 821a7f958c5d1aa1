"""Concurrent utilities - fan-out/join primitives for asyncio tasks."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable


def _first_error(group: BaseExceptionGroup) -> BaseException:
    exc: BaseException = group
    while isinstance(exc, BaseExceptionGroup):
        exc = exc.exceptions[0]
    return exc


async def map_async[I, O](
    fn: Callable[[I], Awaitable[O]],
    items: Iterable[I],
) -> list[O]:
    """Run ``fn`` over every item concurrently, preserving order.

    Each task writes into its own pre-allocated slot, so no lock is needed
    to collect results. The first failure cancels the remaining tasks and
    is re-raised as-is rather than wrapped in an ExceptionGroup.

    Args:
        fn: Coroutine function applied to each item.
        items: Items to process.

    Returns:
        Results in the same order as the input items.

    Example:
        >>> servers = await map_async(reconciler.server, specs)
    """
    items_list = list(items)
    results: list[O | None] = [None] * len(items_list)

    async def run(index: int, item: I) -> None:
        results[index] = await fn(item)

    try:
        async with asyncio.TaskGroup() as tg:
            for index, item in enumerate(items_list):
                tg.create_task(run(index, item))
    except BaseExceptionGroup as group:
        raise _first_error(group) from None

    return results  # type: ignore[return-value]


async def for_each_async[I](
    fn: Callable[[I], Awaitable[object]],
    items: Iterable[I],
) -> None:
    """Apply ``fn`` to items concurrently, discarding results.

    Raises:
        Exception: First exception encountered (fails fast).
    """
    await map_async(fn, items)
