import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Tuple, TypeVar


K = TypeVar("K")
R = TypeVar("R")

DEFAULT_POOL_WIDTH = 5


async def map_bounded(
    fn: Callable[[K], Awaitable[R]],
    items: Iterable[K],
    width: int = DEFAULT_POOL_WIDTH,
) -> List[Tuple[K, Any]]:
    """Run ``fn`` over ``items`` with at most ``width`` calls in flight.

    Returns ``(item, result)`` pairs in input order. A call that raised yields
    its exception as the result, so one failure never aborts the batch.
    """
    if width < 1:
        raise ValueError("pool width must be >= 1")
    sem = asyncio.Semaphore(width)

    async def _task(item: K) -> Tuple[K, Any]:
        async with sem:
            try:
                return item, await fn(item)
            except Exception as exc:
                return item, exc

    return list(await asyncio.gather(*[_task(item) for item in items]))
