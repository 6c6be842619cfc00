"""Tests for OverlayBroadcaster — WebSocket fan-out to overlay displays."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from stream_stage.config import OverlayConfig
from stream_stage.overlay import OverlayBroadcaster


@pytest_asyncio.fixture
async def overlay_client():
    broadcaster = OverlayBroadcaster(OverlayConfig(path="/ws"))
    client = TestClient(TestServer(broadcaster.app))
    await client.start_server()
    yield broadcaster, client
    await client.close()


async def _wait_for_clients(broadcaster: OverlayBroadcaster, count: int) -> None:
    for _ in range(50):
        if broadcaster.client_count() == count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} overlay clients, have {broadcaster.client_count()}")


def _fake_socket(closed: bool = False, fails: bool = False) -> MagicMock:
    ws = MagicMock()
    ws.closed = closed
    ws.send_str = AsyncMock(side_effect=ConnectionResetError("gone") if fails else None)
    return ws


class TestBroadcastUnit:
    """broadcast() against socket doubles."""

    async def test_zero_subscribers_returns_false(self):
        broadcaster = OverlayBroadcaster(OverlayConfig())
        assert await broadcaster.broadcast({"type": "command"}) is False
        assert broadcaster.client_count() == 0

    async def test_failing_subscriber_does_not_block_others(self):
        broadcaster = OverlayBroadcaster(OverlayConfig())
        bad = _fake_socket(fails=True)
        good = _fake_socket()
        broadcaster._clients.update({bad, good})

        assert await broadcaster.broadcast({"type": "command", "text": "hi"}) is True
        good.send_str.assert_awaited_once()
        assert '"text": "hi"' in good.send_str.await_args[0][0]

    async def test_all_failing_returns_false(self):
        broadcaster = OverlayBroadcaster(OverlayConfig())
        broadcaster._clients.update({_fake_socket(fails=True), _fake_socket(fails=True)})
        assert await broadcaster.broadcast({"type": "event"}) is False

    async def test_closed_subscribers_skipped(self):
        broadcaster = OverlayBroadcaster(OverlayConfig())
        closed = _fake_socket(closed=True)
        broadcaster._clients.add(closed)
        assert await broadcaster.broadcast({"type": "event"}) is False
        closed.send_str.assert_not_awaited()
        assert broadcaster.client_count() == 0


class TestOverlayServer:
    """Real aiohttp server with WebSocket clients."""

    async def test_greeting_on_connect(self, overlay_client):
        broadcaster, client = overlay_client
        ws = await client.ws_connect("/ws")
        greeting = await ws.receive_json(timeout=2)
        assert greeting == {"type": "connection", "message": "Connected to backend"}
        await ws.close()

    async def test_broadcast_reaches_every_subscriber(self, overlay_client):
        broadcaster, client = overlay_client
        sockets = [await client.ws_connect("/ws") for _ in range(3)]
        for ws in sockets:
            await ws.receive_json(timeout=2)
        await _wait_for_clients(broadcaster, 3)

        event = {"type": "command", "command_name": "lurk", "text": "Alice"}
        assert await broadcaster.broadcast(event) is True
        for ws in sockets:
            assert await ws.receive_json(timeout=2) == event
            await ws.close()

    async def test_late_subscriber_gets_no_backlog(self, overlay_client):
        broadcaster, client = overlay_client
        await broadcaster.broadcast({"type": "event", "event_name": "follow"})

        ws = await client.ws_connect("/ws")
        await ws.receive_json(timeout=2)
        await _wait_for_clients(broadcaster, 1)
        await broadcaster.broadcast({"type": "event", "event_name": "raid"})
        assert (await ws.receive_json(timeout=2))["event_name"] == "raid"
        await ws.close()

    async def test_disconnect_removes_subscriber(self, overlay_client):
        broadcaster, client = overlay_client
        ws = await client.ws_connect("/ws")
        await ws.receive_json(timeout=2)
        await _wait_for_clients(broadcaster, 1)
        await ws.close()
        await _wait_for_clients(broadcaster, 0)

    async def test_health(self, overlay_client):
        broadcaster, client = overlay_client
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "overlay_clients": 0}
