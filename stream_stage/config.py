"""Configuration system for stream-stage.

All Pydantic models live here with sensible defaults. The command and
event tables are opaque presentation data: the service only reads the
fields it needs to render a reply and an overlay event.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator


# ═══════════════════════════════════════════════════════════════
#  Twitch connection
# ═══════════════════════════════════════════════════════════════

class TwitchConfig(BaseModel):
    access_token: str = ""
    client_id: str = ""
    channel_name: str = Field(default="", description="Target channel login; empty = bot's own channel")
    eventsub_url: str = "wss://eventsub.wss.twitch.tv/ws"
    api_base_url: str = "https://api.twitch.tv/helix"
    validate_url: str = "https://id.twitch.tv/oauth2/validate"
    request_timeout_seconds: float = 10.0
    reconnect_delay_seconds: float = 5.0
    extra_subscriptions: list[str] = Field(
        default_factory=list,
        description="Optional event classes on top of chat + follow: channel.subscribe, channel.raid",
    )


class DatabaseConfig(BaseModel):
    path: str = "data/stage.db"


# ═══════════════════════════════════════════════════════════════
#  Points
# ═══════════════════════════════════════════════════════════════

class PointsConfig(BaseModel):
    enabled: bool = True
    points_per_tick: int = Field(default=10, gt=0)
    activity_timeout_minutes: float = Field(default=5.0, gt=0)
    accrual_interval_seconds: float = Field(default=60.0, gt=0)


# ═══════════════════════════════════════════════════════════════
#  Overlay server
# ═══════════════════════════════════════════════════════════════

class OverlayConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    path: str = "/ws"


# ═══════════════════════════════════════════════════════════════
#  Command / event tables
# ═══════════════════════════════════════════════════════════════

class PresentationConfig(BaseModel):
    """Fields shared by commands and events. Unknown keys are kept."""

    model_config = {"extra": "allow"}

    reply: str | None = None
    image: str | None = None
    sound: str | None = None
    video: str | None = None
    text: str | None = None
    transition_in: str | None = None
    transition_out: str | None = None
    timeout: str | None = None

    @property
    def has_presentation(self) -> bool:
        return bool(self.image or self.sound or self.video or self.text)


class CommandConfig(PresentationConfig):
    command_name: str = ""
    cost: int = Field(default=0, ge=0)


class EventConfig(PresentationConfig):
    event_name: str = ""


class CommandsConfig(BaseModel):
    prefix: str = "!"
    items: dict[str, CommandConfig] = Field(default_factory=dict)
    extensions: dict[str, str] = Field(
        default_factory=dict,
        description="Command name → 'package.module:attribute' extension handler",
    )

    @field_validator("items", "extensions")
    @classmethod
    def _lowercase_names(cls, value: dict) -> dict:
        return {name.lower(): item for name, item in value.items()}


class StageConfig(BaseModel):
    """Full service config."""

    twitch: TwitchConfig = Field(default_factory=TwitchConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    points: PointsConfig = Field(default_factory=PointsConfig)
    overlay: OverlayConfig = Field(default_factory=OverlayConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    events: dict[str, EventConfig] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Config Loading
# ═══════════════════════════════════════════════════════════════

def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand ${VAR} and ${VAR:-default} in string values."""
    if isinstance(obj, str):
        return re.sub(
            r"\$\{([^}:]+)(?::-(.*?))?\}",
            lambda m: os.environ.get(m.group(1), m.group(2) or ""),
            obj,
        )
    elif isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(v) for v in obj]
    return obj


def load_config(config_path: str) -> StageConfig:
    """Load and validate YAML config file into StageConfig."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ValueError("Config file must contain a YAML mapping at the top level.")

    raw = _expand_env_vars(raw)
    return StageConfig(**raw)
