"""Overlay broadcaster — fan-out of presentation events to browser overlays.

Runs a small aiohttp web app: overlays connect to the WebSocket route and
receive every event broadcast while they are connected. There is no
backlog; a late subscriber only sees events sent after it connected.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from aiohttp import WSMsgType, web

if TYPE_CHECKING:
    from .config import OverlayConfig


class OverlayBroadcaster:
    """WebSocket fan-out to zero or more overlay displays."""

    def __init__(self, config: OverlayConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger("stage.overlay")
        self._clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None

        self.app = web.Application()
        self.app.router.add_get(config.path, self.handle_websocket)
        self.app.router.add_get("/health", self.handle_health)

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Start the HTTP/WebSocket listener."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await site.start()
        self._logger.info(
            "Overlay server listening on ws://%s:%d%s",
            self._config.host, self._config.port, self._config.path,
        )

    async def stop(self) -> None:
        """Close all overlay sockets and shut the listener down."""
        for ws in list(self._clients):
            await ws.close()
        self._clients.clear()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── Routes ───────────────────────────────────────────────

    async def handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self._clients.add(ws)
        self._logger.info("Overlay connected (%d open)", len(self._clients))
        try:
            await ws.send_str(json.dumps({"type": "connection", "message": "Connected to backend"}))
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._logger.debug("Received from overlay: %s", msg.data)
                elif msg.type == WSMsgType.ERROR:
                    self._logger.warning("Overlay socket error: %s", ws.exception())
        finally:
            self._clients.discard(ws)
            self._logger.info("Overlay disconnected (%d open)", len(self._clients))
        return ws

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "overlay_clients": self.client_count()})

    # ── Public API ───────────────────────────────────────────

    def client_count(self) -> int:
        """Number of currently open overlay subscribers."""
        return sum(1 for ws in self._clients if not ws.closed)

    async def broadcast(self, event: dict[str, Any]) -> bool:
        """Send *event* to every open subscriber.

        Returns True if at least one subscriber received it. A failing
        subscriber is logged and skipped.
        """
        message = json.dumps(event)
        sent = 0
        for ws in list(self._clients):
            if ws.closed:
                continue
            try:
                await ws.send_str(message)
                sent += 1
            except Exception as exc:
                self._logger.error("Error sending to overlay client: %s", exc)

        self._logger.info("Sent %s event to %d overlay client(s)", event.get("type", "?"), sent)
        return sent > 0
