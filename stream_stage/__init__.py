"""stream-stage — Twitch chat commands, overlay alerts and viewer points."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("stream-stage")
except PackageNotFoundError:
    __version__ = "0.0.0"
