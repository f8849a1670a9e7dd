import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, TypeVar


T = TypeVar("T")


class FifoMutex:
    """Process-wide advisory lock for read-modify-write on the record store.

    Waiters are released strictly in arrival order: ``release`` hands the lock
    straight to the oldest waiter instead of letting a newcomer grab it.
    There is no timeout.

        async with gate:
            ...

        await gate.run(job.apply, batch)
    """

    def __init__(self, name: str = "records") -> None:
        self.name = name
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    def locked(self) -> bool:
        return self._locked

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    async def acquire(self) -> None:
        if not self._locked and not self.waiting:
            self._locked = True
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Ownership was handed over just before the cancellation landed.
                self.release()
            else:
                self._discard(fut)
            raise

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError(f"mutex {self.name!r} released while not held")
        nxt = self._next_waiter()
        if nxt is None:
            self._locked = False
        else:
            nxt.set_result(True)

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        await self.acquire()
        try:
            return await fn(*args, **kwargs)
        finally:
            self.release()

    async def __aenter__(self) -> "FifoMutex":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

    def _next_waiter(self) -> Optional[asyncio.Future]:
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                return fut
        return None

    def _discard(self, fut: asyncio.Future) -> None:
        if fut in self._waiters:
            self._waiters.remove(fut)
