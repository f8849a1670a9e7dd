"""Out-of-band notifications for the presentation layer.

Delivery is best-effort and at-most-once per subscriber. There is no replay
buffer: a subscriber that falls behind or disconnects misses messages and is
expected to refresh its full state afterwards.
"""

import asyncio
from typing import Any, Dict, Optional, Set

import websockets

from .util import json_dumps, log


class Broadcaster:
    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, kind: str, payload: Dict[str, Any]) -> int:
        message = {"event": kind, "data": payload}
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
        return delivered


async def serve_websocket(broadcaster: Broadcaster, host: str, port: int, ready: Optional[asyncio.Event] = None) -> None:
    """Relay every broadcast message as JSON text to connected websocket clients."""

    async def _handler(ws: Any) -> None:
        queue = broadcaster.subscribe()
        peer = getattr(ws, "remote_address", None)
        log(f"[notify] client connected {peer}")
        closed = asyncio.ensure_future(ws.wait_closed())
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, closed}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    break
                await ws.send(json_dumps(getter.result()))
        except websockets.ConnectionClosed as exc:
            log(f"[notify] send to {peer} failed: {exc}")
        finally:
            closed.cancel()
            broadcaster.unsubscribe(queue)
            log(f"[notify] client disconnected {peer}")

    async with websockets.serve(_handler, host, port):
        log(f"[notify] websocket relay listening on {host}:{port}")
        if ready is not None:
            ready.set()
        await asyncio.Future()
