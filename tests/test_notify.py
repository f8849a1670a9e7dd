"""Tests for the notification fan-out and websocket relay."""
import asyncio
import json
import socket

import pytest
import websockets

from clash_indexer.notify import Broadcaster, serve_websocket


def test_publish_without_subscribers_is_a_noop():
    assert Broadcaster().publish("GameCreated", {"gameId": 1}) == 0


@pytest.mark.asyncio
async def test_every_subscriber_gets_the_message():
    broadcaster = Broadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    assert broadcaster.publish("GameJoined", {"gameId": 3}) == 2
    expected = {"event": "GameJoined", "data": {"gameId": 3}}
    assert first.get_nowait() == expected
    assert second.get_nowait() == expected

    broadcaster.unsubscribe(first)
    assert broadcaster.subscriber_count == 1
    assert broadcaster.publish("GameCancelled", {"gameId": 3}) == 1
    assert first.empty()


@pytest.mark.asyncio
async def test_slow_subscriber_misses_messages():
    broadcaster = Broadcaster(queue_size=2)
    slow = broadcaster.subscribe()
    for n in range(4):
        broadcaster.publish("GameCreated", {"gameId": n})

    assert broadcaster.dropped == 2
    assert [slow.get_nowait()["data"]["gameId"] for _ in range(2)] == [0, 1]


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_websocket_relay_forwards_json():
    broadcaster = Broadcaster()
    port = _free_port()
    ready = asyncio.Event()
    server = asyncio.create_task(serve_websocket(broadcaster, "127.0.0.1", port, ready))
    try:
        await asyncio.wait_for(ready.wait(), timeout=5)
        async with websockets.connect(f"ws://127.0.0.1:{port}") as client:
            for _ in range(100):
                if broadcaster.subscriber_count:
                    break
                await asyncio.sleep(0.01)
            broadcaster.publish("GameSettled", {"gameId": 8, "args": ["8", None]})
            raw = await asyncio.wait_for(client.recv(), timeout=5)
        assert json.loads(raw) == {"event": "GameSettled", "data": {"gameId": 8, "args": ["8", None]}}
    finally:
        server.cancel()
        with pytest.raises(asyncio.CancelledError):
            await server
