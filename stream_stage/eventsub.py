"""EventSub client — Twitch WebSocket session plus the Helix calls around it.

One duplex session is kept open. Every welcome message starts a new
session: its id is captured and the subscription set is registered
against it, once. Notifications are decoded into typed models and handed
to the handlers registered with ``on()``, in the order they arrive.

Helix calls (user lookup, chat post, chatters roster, subscription
registration, token validation) share one aiohttp session. Transport
failures are logged and surface as empty results or ``False``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import aiohttp

from .models import ChatMessage, ConnectionState, FollowEvent, Identity, RaidEvent, SubscribeEvent

if TYPE_CHECKING:
    from .config import TwitchConfig


Handler = Callable[[Any], Awaitable[None]]

REQUIRED_SCOPES = (
    "user:read:chat",
    "user:write:chat",
    "channel:read:subscriptions",
    "moderator:read:followers",
    "moderator:read:chatters",
)

# Notification subscription type → typed event model
EVENT_MODELS = {
    "channel.follow": FollowEvent,
    "channel.subscribe": SubscribeEvent,
    "channel.raid": RaidEvent,
}

WELCOME_TIMEOUT_SECONDS = 30.0
KEEPALIVE_GRACE_SECONDS = 10.0
ROSTER_PAGE_SIZE = 1000


class EventSubClient:
    """Long-lived EventSub session with handler registration."""

    def __init__(
        self,
        config: TwitchConfig,
        logger: logging.Logger | None = None,
        session: aiohttp.ClientSession | None = None,
        ws_session: aiohttp.ClientSession | None = None,
    ) -> None:
        if not config.access_token or not config.client_id:
            raise ValueError("Twitch access token and client ID are required")

        self._config = config
        self._logger = logger or logging.getLogger("stage.eventsub")
        self._session = session
        self._ws_session = ws_session
        self._owns_sessions = session is None

        self._handlers: dict[str, list[Handler]] = {}
        self._state = ConnectionState.DISCONNECTED
        self._session_id: str | None = None
        self._subscribed_session: str | None = None
        self._keepalive_timeout: float | None = None
        self._user_id: str | None = None
        self._channel_id: str | None = None
        self._run_task: asyncio.Task | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._stopping = False

        self.active_subscriptions: list[str] = []

        # Metrics counters
        self.notifications_received: int = 0
        self.reconnects: int = 0

    # ── Properties ───────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def channel_id(self) -> str | None:
        return self._channel_id

    def _set_state(self, state: ConnectionState) -> None:
        if state is not self._state:
            self._logger.debug("EventSub state: %s → %s", self._state.value, state.value)
            self._state = state

    # ── Handler registration ─────────────────────────────────

    def on(self, event_type: str) -> Callable[[Handler], Handler]:
        """Decorator registering a handler for 'chat_message', 'follow', 'subscription' or 'raid'."""
        def decorator(func: Handler) -> Handler:
            self._handlers.setdefault(event_type, []).append(func)
            return func
        return decorator

    async def _emit(self, event_type: str, event: Any) -> None:
        for handler in self._handlers.get(event_type, []):
            try:
                await handler(event)
            except Exception:
                self._logger.exception("Handler for '%s' failed", event_type)

    # ══════════════════════════════════════════════════════════
    #  Lifecycle
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        """Create the HTTP sessions if none were injected."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self._config.access_token}",
                    "Client-Id": self._config.client_id,
                },
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds),
            )
        if self._ws_session is None:
            self._ws_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, connect=self._config.request_timeout_seconds),
            )

    async def connect(self) -> None:
        """Resolve identities, check token scopes, then run the session loop."""
        await self.start()

        self._user_id = await self.fetch_own_user_id()
        if self._user_id is None:
            self._logger.error("Could not resolve bot user id; subscriptions will fail")
        self._channel_id = await self._resolve_channel_id()
        await self.validate_token()

        self._stopping = False
        self._run_task = asyncio.create_task(self._run())
        self._logger.info(
            "EventSub client started (user=%s, channel=%s)", self._user_id, self._channel_id,
        )

    async def stop(self) -> None:
        """Close the socket, stop reconnecting and release the sessions."""
        self._stopping = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None
        if self._owns_sessions:
            for session in (self._session, self._ws_session):
                if session is not None:
                    await session.close()
            self._session = None
            self._ws_session = None
        self._session_id = None
        self._subscribed_session = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("EventSub client stopped")

    async def _run(self) -> None:
        """Connect, read until the socket drops, wait, repeat. No retry cap."""
        while not self._stopping:
            self._set_state(ConnectionState.CONNECTING)
            try:
                await self._run_session()
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                self._logger.warning("No EventSub traffic within the keepalive window")
            except Exception as exc:
                self._logger.error("EventSub connection error: %s", exc)

            if self._stopping:
                break

            # A new cycle always re-registers, even if the next welcome reuses an id
            self._session_id = None
            self._subscribed_session = None
            self._set_state(ConnectionState.RECONNECTING)
            self.reconnects += 1
            self._logger.info(
                "Reconnecting to EventSub in %.0fs", self._config.reconnect_delay_seconds,
            )
            await asyncio.sleep(self._config.reconnect_delay_seconds)

        self._set_state(ConnectionState.DISCONNECTED)

    async def _run_session(self) -> None:
        self._keepalive_timeout = None
        async with self._ws_session.ws_connect(self._config.eventsub_url) as ws:
            self._ws = ws
            self._logger.info("Connected to EventSub at %s", self._config.eventsub_url)
            try:
                while True:
                    msg = await ws.receive(timeout=self._receive_timeout())
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        try:
                            data = json.loads(msg.data)
                        except ValueError:
                            self._logger.warning("Discarding non-JSON EventSub frame")
                            continue
                        if not isinstance(data, dict):
                            self._logger.warning("Discarding EventSub frame that is not an object")
                            continue
                        await self.handle_message(data)
                    elif msg.type in (
                        aiohttp.WSMsgType.CLOSE,
                        aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.CLOSED,
                    ):
                        self._logger.warning("EventSub connection closed")
                        return
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self._logger.error("EventSub socket error: %s", ws.exception())
                        return
            finally:
                self._ws = None

    def _receive_timeout(self) -> float:
        if self._keepalive_timeout is None:
            return WELCOME_TIMEOUT_SECONDS
        return self._keepalive_timeout + KEEPALIVE_GRACE_SECONDS

    # ══════════════════════════════════════════════════════════
    #  Inbound messages
    # ══════════════════════════════════════════════════════════

    async def handle_message(self, message: dict[str, Any]) -> None:
        """Route one decoded frame by its metadata.message_type."""
        if not isinstance(message, dict):
            self._logger.warning("Discarding EventSub frame that is not an object")
            return
        metadata = message.get("metadata") or {}
        payload = message.get("payload") or {}
        if not isinstance(metadata, dict) or not isinstance(payload, dict):
            self._logger.warning("Discarding EventSub frame with a malformed envelope")
            return
        message_type = metadata.get("message_type")

        if message_type == "session_welcome":
            await self._handle_welcome(payload)
        elif message_type == "session_keepalive":
            pass
        elif message_type == "notification":
            await self._handle_notification(metadata, payload)
        elif message_type == "session_reconnect":
            session = payload.get("session") or {}
            self._logger.info("EventSub requested reconnect to %s", session.get("reconnect_url"))
        elif message_type == "revocation":
            subscription = payload.get("subscription") or {}
            self._logger.warning(
                "Subscription %s revoked: %s", subscription.get("type"), subscription.get("status"),
            )
        else:
            self._logger.warning("Unhandled EventSub message type: %s", message_type)

    async def _handle_welcome(self, payload: dict[str, Any]) -> None:
        session = payload.get("session") or {}
        self._session_id = session.get("id")
        keepalive = session.get("keepalive_timeout_seconds")
        if keepalive:
            self._keepalive_timeout = float(keepalive)
        self._set_state(ConnectionState.WELCOMED)
        self._logger.info("EventSub session established: %s", self._session_id)
        await self.register_subscriptions()

    async def _handle_notification(self, metadata: dict[str, Any], payload: dict[str, Any]) -> None:
        self.notifications_received += 1
        sub_type = None
        try:
            subscription = payload.get("subscription") or {}
            sub_type = subscription.get("type") or metadata.get("subscription_type")
            event = payload.get("event") or {}

            if sub_type == "channel.chat.message":
                event_type, decoded = "chat_message", ChatMessage.from_event(event)
            else:
                model = EVENT_MODELS.get(sub_type)
                if model is None:
                    self._logger.debug("Ignoring notification of type %s", sub_type)
                    return
                decoded = model.from_event(event)
                event_type = decoded.event_name
        except (ValueError, TypeError, AttributeError) as exc:
            self._logger.warning("Skipping malformed %s notification: %s", sub_type or "unknown", exc)
            return

        await self._emit(event_type, decoded)

    # ══════════════════════════════════════════════════════════
    #  Subscriptions
    # ══════════════════════════════════════════════════════════

    def subscription_bodies(self) -> list[dict[str, Any]]:
        """Subscription set for the current session: chat + follow, plus configured extras."""
        bodies = [
            {
                "type": "channel.chat.message",
                "version": "1",
                "condition": {
                    "broadcaster_user_id": self._channel_id,
                    "user_id": self._user_id,
                },
            },
            {
                "type": "channel.follow",
                "version": "2",
                "condition": {
                    "broadcaster_user_id": self._channel_id,
                    "moderator_user_id": self._user_id,
                },
            },
        ]
        for sub_type in self._config.extra_subscriptions:
            if sub_type == "channel.subscribe":
                condition = {"broadcaster_user_id": self._channel_id}
            elif sub_type == "channel.raid":
                condition = {"to_broadcaster_user_id": self._channel_id}
            else:
                self._logger.warning("Unsupported extra subscription: %s", sub_type)
                continue
            bodies.append({"type": sub_type, "version": "1", "condition": condition})

        for body in bodies:
            body["transport"] = {"method": "websocket", "session_id": self._session_id}
        return bodies

    async def register_subscriptions(self) -> None:
        """Register every subscription class against the current session.

        Runs at most once per session id. A failed class is logged and
        left unsubscribed; the others still go ahead.
        """
        if self._session_id is None or self._subscribed_session == self._session_id:
            return
        self._subscribed_session = self._session_id
        self._set_state(ConnectionState.SUBSCRIBING)

        self.active_subscriptions = []
        for body in self.subscription_bodies():
            if await self._create_subscription(body):
                self.active_subscriptions.append(body["type"])

        self._set_state(ConnectionState.LIVE)
        self._logger.info("EventSub live with subscriptions: %s", self.active_subscriptions)

    async def _create_subscription(self, body: dict[str, Any]) -> bool:
        try:
            async with self._session.post(
                f"{self._config.api_base_url}/eventsub/subscriptions", json=body,
            ) as resp:
                if resp.status not in (200, 202):
                    detail = await resp.text()
                    self._logger.error(
                        "Failed to subscribe to %s (HTTP %d): %s", body["type"], resp.status, detail,
                    )
                    return False
        except Exception as e:
            self._logger.error("Failed to subscribe to %s: %s", body["type"], e)
            return False
        self._logger.info("Subscribed to %s", body["type"])
        return True

    # ══════════════════════════════════════════════════════════
    #  Helix REST
    # ══════════════════════════════════════════════════════════

    async def _helix_get(self, path: str, params: dict[str, Any] | None = None) -> dict | None:
        if not self._session:
            return None
        try:
            async with self._session.get(f"{self._config.api_base_url}{path}", params=params) as resp:
                if resp.status != 200:
                    self._logger.error("Helix GET %s failed (HTTP %d)", path, resp.status)
                    return None
                return await resp.json()
        except Exception as e:
            self._logger.error("Helix GET %s failed: %s", path, e)
            return None

    async def fetch_own_user_id(self) -> str | None:
        data = await self._helix_get("/users")
        users = (data or {}).get("data") or []
        if not users:
            return None
        user = users[0]
        self._logger.info("Authenticated as %s (%s)", user.get("login"), user.get("id"))
        return user.get("id")

    async def fetch_user_id(self, login: str) -> str | None:
        data = await self._helix_get("/users", params={"login": login})
        users = (data or {}).get("data") or []
        return users[0].get("id") if users else None

    async def _resolve_channel_id(self) -> str | None:
        login = self._config.channel_name
        if not login:
            return self._user_id
        channel_id = await self.fetch_user_id(login)
        if channel_id is None:
            self._logger.warning(
                "Could not resolve channel '%s'; using the bot's own channel", login,
            )
            return self._user_id
        return channel_id

    async def validate_token(self) -> list[str]:
        """Return the token's scopes, logging any the service needs but lacks."""
        if not self._session:
            return []
        try:
            async with self._session.get(
                self._config.validate_url,
                headers={"Authorization": f"OAuth {self._config.access_token}"},
            ) as resp:
                if resp.status != 200:
                    self._logger.error("Token validation failed (HTTP %d)", resp.status)
                    return []
                data = await resp.json()
        except Exception as e:
            self._logger.error("Token validation failed: %s", e)
            return []

        scopes = data.get("scopes") or []
        missing = [scope for scope in REQUIRED_SCOPES if scope not in scopes]
        if missing:
            self._logger.warning("Token is missing scopes: %s", ", ".join(missing))
        return scopes

    async def query_roster(self) -> list[Identity]:
        """Everyone currently in chat. Empty list on any failure."""
        if not self._channel_id or not self._user_id:
            self._logger.warning("Channel not resolved; roster unavailable")
            return []

        viewers: list[Identity] = []
        cursor: str | None = None
        while True:
            params: dict[str, Any] = {
                "broadcaster_id": self._channel_id,
                "moderator_id": self._user_id,
                "first": ROSTER_PAGE_SIZE,
            }
            if cursor:
                params["after"] = cursor
            data = await self._helix_get("/chat/chatters", params=params)
            if data is None:
                return []
            for item in data.get("data") or []:
                viewers.append(Identity(
                    user_id=str(item.get("user_id", "")),
                    login=item.get("user_login", ""),
                    display_name=item.get("user_name", ""),
                ))
            cursor = (data.get("pagination") or {}).get("cursor")
            if not cursor:
                return viewers

    async def send_chat_message(self, message: str) -> bool:
        """Post *message* to the channel chat as the bot. Never raises."""
        if not self._session or not self._channel_id or not self._user_id:
            self._logger.warning("Chat not available; dropping message: %s", message)
            return False
        body = {
            "broadcaster_id": self._channel_id,
            "sender_id": self._user_id,
            "message": message,
        }
        try:
            async with self._session.post(
                f"{self._config.api_base_url}/chat/messages", json=body,
            ) as resp:
                if resp.status != 200:
                    self._logger.error("Chat send failed (HTTP %d)", resp.status)
                    return False
                data = await resp.json()
        except Exception as e:
            self._logger.error("Chat send failed: %s", e)
            return False

        result = ((data or {}).get("data") or [{}])[0]
        if result.get("is_sent") is False:
            reason = (result.get("drop_reason") or {}).get("message")
            self._logger.warning("Chat message dropped: %s", reason)
            return False
        return True
