"""Typed EventSub payloads and identities.

Only the fields the dispatch and points paths use are decoded; the raw
event dict is kept on each object for anything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WELCOMED = "welcomed"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class Identity:
    """A platform user as seen in a notification or the chatters roster."""

    user_id: str
    login: str = ""
    display_name: str = ""

    @property
    def name(self) -> str:
        """Display name, falling back to login."""
        return self.display_name or self.login


@dataclass(frozen=True)
class ChatMessage:
    chatter: Identity
    text: str
    message_id: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> ChatMessage:
        message = event.get("message") or {}
        return cls(
            chatter=Identity(
                user_id=str(event.get("chatter_user_id", "")),
                login=event.get("chatter_user_login") or event.get("chatter_user_name", ""),
                display_name=event.get("chatter_user_name") or event.get("chatter_user_display_name", ""),
            ),
            text=message.get("text", ""),
            message_id=event.get("message_id", ""),
            raw=event,
        )


@dataclass(frozen=True)
class FollowEvent:
    follower: Identity
    followed_at: str = ""
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    event_name = "follow"

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> FollowEvent:
        return cls(
            follower=Identity(
                user_id=str(event.get("user_id", "")),
                login=event.get("user_login", ""),
                display_name=event.get("user_name", ""),
            ),
            followed_at=event.get("followed_at", ""),
            raw=event,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "username": self.follower.name,
            "display_name": self.follower.display_name,
            "user_id": self.follower.user_id,
            "followed_at": self.followed_at,
        }


@dataclass(frozen=True)
class SubscribeEvent:
    subscriber: Identity
    tier: str = ""
    is_gift: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    event_name = "subscription"

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> SubscribeEvent:
        return cls(
            subscriber=Identity(
                user_id=str(event.get("user_id", "")),
                login=event.get("user_login", ""),
                display_name=event.get("user_name", ""),
            ),
            tier=event.get("tier", ""),
            is_gift=bool(event.get("is_gift", False)),
            raw=event,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "username": self.subscriber.name,
            "display_name": self.subscriber.display_name,
            "user_id": self.subscriber.user_id,
        }


@dataclass(frozen=True)
class RaidEvent:
    raider: Identity
    viewers: int = 0
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    event_name = "raid"

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> RaidEvent:
        return cls(
            raider=Identity(
                user_id=str(event.get("from_broadcaster_user_id", "")),
                login=event.get("from_broadcaster_user_login", ""),
                display_name=event.get("from_broadcaster_user_name", ""),
            ),
            viewers=int(event.get("viewers") or 0),
            raw=event,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "username": self.raider.name,
            "display_name": self.raider.display_name,
            "user_id": self.raider.user_id,
            "viewer_count": self.viewers,
        }
