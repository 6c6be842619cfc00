"""Command and event dispatch — config-driven chat replies and overlay alerts.

A chat line starting with the command prefix is looked up in a registry
built once at startup. Each entry is either a static table entry (reply
template + presentation fields) or an extension handler object. Platform
events are looked up in the event table only.

Unknown commands are dropped quietly; unknown events are logged.
"""

from __future__ import annotations

import importlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol, Union

from .database import LedgerError

if TYPE_CHECKING:
    from .config import CommandConfig, CommandsConfig, EventConfig, PresentationConfig
    from .models import Identity
    from .points_manager import PointsManager


PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


class ChatSender(Protocol):
    async def send_chat_message(self, message: str) -> bool: ...


class PresentationSink(Protocol):
    async def broadcast(self, event: dict[str, Any]) -> bool: ...


def render_template(template: str | None, context: dict[str, Any]) -> str:
    """Replace {{name}} placeholders; names missing from *context* become ''."""
    if not template:
        return ""

    def _sub(match: re.Match[str]) -> str:
        value = context.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(_sub, template)


# ═══════════════════════════════════════════════════════════════
#  Command registry
# ═══════════════════════════════════════════════════════════════

@dataclass
class CommandContext:
    """Shared services handed to extension commands."""

    chat: ChatSender | None
    overlay: PresentationSink | None
    points: PointsManager | None
    logger: logging.Logger


class CommandExtension(Protocol):
    async def execute(self, args: list[str], identity: Identity, context: CommandContext) -> None: ...


@dataclass(frozen=True)
class StaticCommand:
    name: str
    config: CommandConfig

    @property
    def cost(self) -> int:
        return self.config.cost


@dataclass(frozen=True)
class ExtensionCommand:
    name: str
    handler: CommandExtension
    cost: int = 0


RegisteredCommand = Union[StaticCommand, ExtensionCommand]


def load_extension(target: str) -> CommandExtension:
    """Resolve 'package.module:attribute'. Classes are instantiated without arguments."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Extension target must look like 'module:attribute', got {target!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    if isinstance(obj, type):
        obj = obj()
    if not callable(getattr(obj, "execute", None)):
        raise TypeError(f"Extension {target!r} has no execute() method")
    return obj


def build_command_registry(
    commands: CommandsConfig,
    builtins: dict[str, CommandExtension] | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, RegisteredCommand]:
    """Build the name → command map. Table entries win over extensions and builtins."""
    log = logger or logging.getLogger("stage.dispatch")
    registry: dict[str, RegisteredCommand] = {}

    for name, handler in (builtins or {}).items():
        registry[name.lower()] = ExtensionCommand(name=name.lower(), handler=handler)

    for name, target in commands.extensions.items():
        try:
            registry[name] = ExtensionCommand(name=name, handler=load_extension(target))
        except Exception as exc:
            log.error("Failed to load extension command '%s' from %s: %s", name, target, exc)

    for name, item in commands.items.items():
        registry[name] = StaticCommand(name=name, config=item)

    log.info("Commands loaded: %s", sorted(registry))
    return registry


# ═══════════════════════════════════════════════════════════════
#  Response execution
# ═══════════════════════════════════════════════════════════════

class ResponseExecutor:
    """Renders a table entry into a chat reply and an overlay event."""

    def __init__(
        self,
        chat: ChatSender | None,
        overlay: PresentationSink | None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._chat = chat
        self._overlay = overlay
        self._logger = logger or logging.getLogger("stage.dispatch")

    async def execute_config(
        self,
        config: PresentationConfig,
        context: dict[str, Any],
        *,
        kind: str = "command",
        name: str = "",
    ) -> None:
        """Send the reply and broadcast the presentation event, independently."""
        if config.reply:
            message = render_template(config.reply, context)
            if self._chat is None:
                self._logger.warning("No chat sender; dropping reply: %s", message)
            else:
                try:
                    sent = await self._chat.send_chat_message(message)
                    if not sent:
                        self._logger.warning("Chat reply for %s '%s' was not delivered", kind, name)
                except Exception:
                    self._logger.exception("Chat reply for %s '%s' failed", kind, name)

        if config.has_presentation:
            event = {
                "type": kind,
                f"{kind}_name": name,
                "image": config.image,
                "sound": config.sound,
                "video": config.video,
                "text": render_template(config.text, context),
                "transition_in": config.transition_in,
                "transition_out": config.transition_out,
                "timeout": config.timeout,
            }
            if self._overlay is None:
                self._logger.warning("No overlay broadcaster; dropping %s event '%s'", kind, name)
                return
            try:
                await self._overlay.broadcast(event)
            except Exception:
                self._logger.exception("Overlay broadcast for %s '%s' failed", kind, name)


class CommandDispatcher(ResponseExecutor):
    """Turns prefixed chat lines into command executions."""

    def __init__(
        self,
        registry: dict[str, RegisteredCommand],
        chat: ChatSender | None,
        overlay: PresentationSink | None,
        points: PointsManager | None = None,
        prefix: str = "!",
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(chat, overlay, logger)
        self._registry = registry
        self._points = points
        self._prefix = prefix
        self._context = CommandContext(chat=chat, overlay=overlay, points=points, logger=self._logger)

        # Metrics counters
        self.commands_executed: int = 0

    def is_command(self, text: str) -> bool:
        return text.startswith(self._prefix)

    async def handle_chat_message(self, text: str, identity: Identity) -> bool:
        """Run the command named in *text*. Returns True if something executed."""
        if not self.is_command(text):
            return False

        parts = text[len(self._prefix):].split()
        if not parts:
            return False
        name = parts[0].lower()
        args = parts[1:]

        entry = self._registry.get(name)
        if entry is None:
            self._logger.debug("Unknown command '%s' from %s", name, identity.name)
            return False

        self._logger.info("Command '%s' from %s (args=%s)", name, identity.name, args)

        if entry.cost > 0 and not await self._charge(name, entry.cost, identity):
            return False

        if isinstance(entry, StaticCommand):
            context = {"username": identity.name}
            await self.execute_config(
                entry.config, context, kind="command", name=entry.config.command_name or name,
            )
        else:
            try:
                await entry.handler.execute(args, identity, self._context)
            except Exception:
                self._logger.exception("Extension command '%s' failed", name)
                return False

        self.commands_executed += 1
        return True

    async def _charge(self, name: str, cost: int, identity: Identity) -> bool:
        """Affordability check, then debit. False aborts the command."""
        if self._points is None:
            return True
        if not await self._points.can_afford(identity.user_id, cost):
            self._logger.info(
                "%s cannot afford '%s' (cost %d); command skipped", identity.name, name, cost,
            )
            return False
        if not self._points.enabled:
            return True
        try:
            await self._points.spend_points(identity.user_id, cost, f"command:{name}")
        except LedgerError as exc:
            self._logger.info("Charge for '%s' by %s rejected: %s", name, identity.name, exc)
            return False
        return True


class EventDispatcher(ResponseExecutor):
    """Runs event-table entries for follow/subscription/raid notifications."""

    def __init__(
        self,
        events: dict[str, EventConfig],
        chat: ChatSender | None,
        overlay: PresentationSink | None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(chat, overlay, logger)
        self._events = events
        self._logger.info("Events loaded: %s", sorted(events))

    async def handle_event(self, event_name: str, payload: dict[str, Any]) -> bool:
        config = self._events.get(event_name)
        if config is None:
            self._logger.warning("No configuration found for event: %s", event_name)
            return False

        context = build_event_context(payload)
        self._logger.info("Event '%s' for %s", event_name, context["display_name"] or "?")
        await self.execute_config(
            config, context, kind="event", name=config.event_name or event_name,
        )
        return True


def build_event_context(payload: dict[str, Any]) -> dict[str, Any]:
    """Template fields for an event, with fallbacks across payload shapes."""
    return {
        "username": payload.get("username") or payload.get("display_name") or payload.get("user_name") or "",
        "display_name": payload.get("display_name") or payload.get("username") or payload.get("user_name") or "",
        "count": payload.get("count") or payload.get("viewer_count") or payload.get("viewers") or "",
        "user_id": payload.get("user_id") or "",
        "followed_at": payload.get("followed_at") or "",
        "timestamp": payload.get("timestamp") or datetime.now(timezone.utc).isoformat(),
    }


# ═══════════════════════════════════════════════════════════════
#  Built-in extensions
# ═══════════════════════════════════════════════════════════════

class PointsBalanceCommand:
    """!points — reply with the caller's balance."""

    async def execute(self, args: list[str], identity: Identity, context: CommandContext) -> None:
        if context.chat is None:
            return
        if context.points is None or not context.points.enabled:
            await context.chat.send_chat_message("The points system is currently disabled.")
            return
        balance = await context.points.get_points(identity.user_id)
        await context.chat.send_chat_message(f"@{identity.name} you have {balance:,} points.")
