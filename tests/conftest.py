"""Shared test fixtures for stream-stage."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from stream_stage.config import StageConfig
from stream_stage.database import LedgerDatabase
from stream_stage.models import Identity


# ── Minimal config dict matching StageConfig schema ──────────

def make_config_dict(**overrides) -> dict:
    """Build a valid config dict with sensible test defaults."""
    base = {
        "twitch": {
            "access_token": "test-token",
            "client_id": "test-client",
            "channel_name": "testchannel",
            "reconnect_delay_seconds": 0.01,
        },
        "database": {"path": ":memory:"},
        "points": {
            "enabled": True,
            "points_per_tick": 10,
            "activity_timeout_minutes": 5,
            "accrual_interval_seconds": 60,
        },
        "overlay": {"host": "127.0.0.1", "port": 0, "path": "/ws"},
        "commands": {
            "prefix": "!",
            "items": {
                "lurk": {
                    "command_name": "lurk",
                    "image": "lurk.png",
                    "sound": "lurk.mp3",
                    "text": "{{username}}",
                    "reply": "Thank you for lurking, {{username}}!",
                    "transition_in": "fade-in",
                    "transition_out": "fade-out",
                    "timeout": "6s",
                },
                "discord": {
                    "command_name": "discord",
                    "reply": "Join our Discord!",
                },
                "hype": {
                    "command_name": "hype",
                    "cost": 50,
                    "video": "hype.mp4",
                    "text": "{{username}} hyped!",
                    "reply": "HYPE from {{username}}",
                },
            },
        },
        "events": {
            "follow": {
                "event_name": "follow",
                "text": "{{username}} is following!",
                "video": "follow-dance.mp4",
                "sound": "follow.mp3",
                "reply": "Thanks {{username}} for the follow!",
                "transition_in": "bounce-in",
                "transition_out": "bounce-out",
                "timeout": "20s",
            },
            "raid": {
                "event_name": "raid",
                "text": "{{username}} is raiding with {{count}} viewers!",
                "reply": "Thanks for the raid, {{username}}!",
            },
        },
    }
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = {**base[key], **value}
        else:
            base[key] = value
    return base


@pytest.fixture
def sample_config_dict() -> dict:
    """Return a config dict suitable for tests."""
    return make_config_dict()


@pytest.fixture
def sample_config(sample_config_dict: dict) -> StageConfig:
    """Return a parsed StageConfig."""
    return StageConfig(**sample_config_dict)


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> str:
    """Return a temporary SQLite database path."""
    return str(tmp_path / "test_stage.db")


@pytest_asyncio.fixture
async def database(tmp_db_path: str) -> AsyncGenerator[LedgerDatabase, None]:
    """Initialized ledger on a temp file."""
    db = LedgerDatabase(tmp_db_path, logging.getLogger("test.ledger"))
    await db.initialize()
    yield db


@pytest.fixture
def viewer() -> Identity:
    return Identity(user_id="1001", login="alice", display_name="Alice")


@pytest.fixture
def mock_twitch() -> MagicMock:
    """Stand-in for EventSubClient: chat sender + roster source."""
    client = MagicMock()
    client.user_id = "9000"
    client.send_chat_message = AsyncMock(return_value=True)
    client.query_roster = AsyncMock(return_value=[])
    return client


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    """Stand-in for OverlayBroadcaster."""
    broadcaster = MagicMock()
    broadcaster.broadcast = AsyncMock(return_value=True)
    broadcaster.client_count = MagicMock(return_value=1)
    return broadcaster


# ── aiohttp response doubles ─────────────────────────────────

def make_response(status: int = 200, json_data: Any = None, text: str = "") -> AsyncMock:
    """Fake aiohttp response usable as ``async with session.get(...) as resp``."""
    resp = AsyncMock()
    resp.status = status
    resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp
