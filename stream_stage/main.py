"""Service orchestrator — StageApp.

Startup order: config → ledger → overlay server → EventSub client →
points manager → dispatchers → handlers → connect → accrual loop → run.

A missing Twitch credential or a ledger that cannot be opened only takes
out its own subsystem; the rest of the service keeps running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path

from . import __version__
from .config import StageConfig, load_config
from .database import LedgerDatabase
from .dispatch import (
    CommandDispatcher,
    EventDispatcher,
    PointsBalanceCommand,
    build_command_registry,
)
from .eventsub import EventSubClient
from .models import ChatMessage, FollowEvent, RaidEvent, SubscribeEvent
from .overlay import OverlayBroadcaster
from .points_manager import PointsManager


class StageApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("stage")

        # Components (initialized in start())
        self.config: StageConfig | None = None
        self.db: LedgerDatabase | None = None
        self.overlay: OverlayBroadcaster | None = None
        self.client: EventSubClient | None = None
        self.points: PointsManager | None = None
        self.command_dispatcher: CommandDispatcher | None = None
        self.event_dispatcher: EventDispatcher | None = None

        # State
        self._running = False
        self._start_time: float | None = None
        self._stopped = asyncio.Event()

        # Counters
        self.events_processed: int = 0

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    async def start(self) -> None:
        """Start every subsystem, then block until stop() is called."""
        await self.setup()
        await self._stopped.wait()

    async def setup(self) -> None:
        self.logger.info("Starting stream-stage...")
        self._start_time = time.time()
        self._stopped.clear()

        # 1. Load and validate config
        self.config = load_config(str(self.config_path))
        self.logger.info(
            "Config loaded: %d command(s), %d event(s)",
            len(self.config.commands.items), len(self.config.events),
        )

        # 2. Initialize ledger (points are disabled if this fails)
        db = LedgerDatabase(self.config.database.path, self.logger.getChild("ledger"))
        try:
            await db.initialize()
            self.db = db
            self.logger.info("Ledger initialized: %s", self.config.database.path)
        except Exception:
            self.logger.exception("Ledger initialization failed; points system disabled")
            self.db = None

        # 3. Overlay server
        self.overlay = OverlayBroadcaster(self.config.overlay, self.logger.getChild("overlay"))
        try:
            await self.overlay.start()
        except OSError:
            self.logger.exception("Overlay server failed to start; overlay events will be dropped")

        # 4. EventSub client (runs without chat/events if credentials are missing)
        try:
            self.client = EventSubClient(self.config.twitch, self.logger.getChild("eventsub"))
        except ValueError as exc:
            self.logger.error("EventSub disabled: %s", exc)
            self.client = None

        # 5. Points manager, polling the client's chatters roster
        self.points = PointsManager(
            config=self.config.points,
            database=self.db,
            roster=self.client,
            logger=self.logger.getChild("points"),
        )

        # 6. Dispatchers
        registry = build_command_registry(
            self.config.commands,
            builtins={"points": PointsBalanceCommand()},
            logger=self.logger.getChild("dispatch"),
        )
        self.command_dispatcher = CommandDispatcher(
            registry=registry,
            chat=self.client,
            overlay=self.overlay,
            points=self.points,
            prefix=self.config.commands.prefix,
            logger=self.logger.getChild("dispatch"),
        )
        self.event_dispatcher = EventDispatcher(
            events=self.config.events,
            chat=self.client,
            overlay=self.overlay,
            logger=self.logger.getChild("dispatch"),
        )

        # 7. Register handlers BEFORE connect, then connect
        if self.client is not None:
            self._register_handlers(self.client)
            await self.client.connect()

        # 8. Accrual loop
        self.points.start()

        self._running = True
        self.logger.info("stream-stage started successfully (v%s)", __version__)

    def _register_handlers(self, client: EventSubClient) -> None:
        @client.on("chat_message")
        async def handle_chat_message(event: ChatMessage):
            self.events_processed += 1
            try:
                await self.points.record_activity(event.chatter)
            except Exception:
                self.logger.exception("Activity update failed for %s", event.chatter.name)

            # Bot's own messages never run commands
            if event.chatter.user_id == client.user_id:
                return
            if self.command_dispatcher.is_command(event.text):
                await self.command_dispatcher.handle_chat_message(event.text, event.chatter)

        async def handle_platform_event(event: FollowEvent | SubscribeEvent | RaidEvent):
            self.events_processed += 1
            await self.event_dispatcher.handle_event(event.event_name, event.to_payload())

        for event_type in (FollowEvent.event_name, SubscribeEvent.event_name, RaidEvent.event_name):
            client.on(event_type)(handle_platform_event)

    async def reload_config(self) -> None:
        """Re-read the config file and apply points settings.

        Command and event tables stay as loaded at startup.
        """
        try:
            new_config = load_config(str(self.config_path))
        except Exception:
            self.logger.exception("Config reload failed; keeping current settings")
            return
        self.config.points = new_config.points
        if self.points is not None:
            await self.points.update_config(new_config.points)
        self.logger.info("Config reloaded from %s", self.config_path)

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            self._stopped.set()
            return
        self.logger.info("Shutting down stream-stage...")
        self._running = False

        if self.points:
            await self.points.stop()
        if self.client:
            await self.client.stop()
        if self.overlay:
            await self.overlay.stop()

        self._stopped.set()
        self.logger.info("stream-stage stopped.")
