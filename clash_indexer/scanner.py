import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Tuple

from .dispatcher import EventDispatcher
from .jobs import run_periodic
from .ledger import Ledger
from .ownership import OwnershipInvalidator
from .stores import CursorStore
from .util import log


Fetch = Callable[[int, int], Awaitable[List[Any]]]
Handle = Callable[[List[Any]], Awaitable[Any]]

SKIPPED_HISTORY = 100


class BlockScanner:
    """Walks ``(cursor, height]`` in bounded chunks and feeds each chunk to ``handle``.

    A chunk whose fetch fails is logged and skipped for good: the cursor still
    moves past it. The cursor is written after each chunk has been handled, so
    a crash replays at most one chunk.
    """

    def __init__(
        self,
        name: str,
        ledger: Ledger,
        cursor: CursorStore,
        fetch: Fetch,
        handle: Handle,
        chunk_size: int = 1000,
        chunk_delay: float = 0.2,
        bootstrap_window: int = 500,
        poll_interval: float = 6,
        reconnect_delay: float = 5,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.name = name
        self.ledger = ledger
        self.cursor = cursor
        self.fetch = fetch
        self.handle = handle
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.bootstrap_window = bootstrap_window
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.skipped: Deque[Tuple[int, int]] = deque(maxlen=SKIPPED_HISTORY)

    async def tick(self) -> int:
        height = await self.ledger.get_current_height()
        last = self.cursor.load()
        if last is None:
            last = self.cursor.save(max(height - self.bootstrap_window, 0))
            log(f"[{self.name}] no cursor, starting after block {last}")
        if height <= last:
            return last

        from_block = last + 1
        while from_block <= height:
            to_block = min(from_block + self.chunk_size - 1, height)
            try:
                items = await self.fetch(from_block, to_block)
            except Exception as exc:
                log(f"ERROR: [{self.name}] fetch {from_block}-{to_block} failed, skipping range: {exc}")
                self.skipped.append((from_block, to_block))
                items = []
            if items:
                await self.handle(items)
            last = self.cursor.save(to_block)
            from_block = to_block + 1
            if from_block <= height and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)
        return last

    async def run_forever(self) -> None:
        await run_periodic(self.name, self.poll_interval, self.tick, self.reconnect_delay)


def game_scanner(ledger: Ledger, dispatcher: EventDispatcher, cursor: CursorStore, cfg: Dict[str, Any]) -> BlockScanner:
    return BlockScanner(
        "scanner",
        ledger,
        cursor,
        fetch=ledger.get_events_in_range,
        handle=dispatcher.dispatch,
        **_scan_settings(cfg),
    )


def transfer_scanner(
    ledger: Ledger, invalidator: OwnershipInvalidator, cursor: CursorStore, cfg: Dict[str, Any]
) -> BlockScanner:
    return BlockScanner(
        "transfers",
        ledger,
        cursor,
        fetch=ledger.get_transfers_in_range,
        handle=invalidator.handle,
        **_scan_settings(cfg),
    )


def _scan_settings(cfg: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "chunk_size": int(cfg.get("chunk_size", 1000)),
        "chunk_delay": float(cfg.get("chunk_delay", 0.2)),
        "bootstrap_window": int(cfg.get("bootstrap_window", 500)),
        "poll_interval": float(cfg.get("poll_interval", 6)),
        "reconnect_delay": float(cfg.get("reconnect_delay", 5)),
    }
