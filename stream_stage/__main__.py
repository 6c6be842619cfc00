"""stream-stage command line: run the chat/overlay/points service or check a config file.

SIGTERM and SIGINT shut the service down cleanly; SIGHUP re-reads the
points settings from the same config file.
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from .main import StageApp

CONFIG_SEARCH_PATHS = [
    "/etc/stream-stage/config.yaml",
    "./config.yaml",
]

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stream-stage",
        description=(
            "Twitch EventSub bot: scripted chat replies and overlay alerts for "
            "commands and follows, plus a watch-time points ledger."
        ),
        epilog="Without --config the file is looked up in: " + ", ".join(CONFIG_SEARCH_PATHS),
    )
    parser.add_argument(
        "--config", type=str,
        help="YAML file with twitch credentials, command/event tables and points settings",
    )
    parser.add_argument(
        "--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Root log level (default: INFO)",
    )
    parser.add_argument(
        "--validate-config", action="store_true",
        help="Parse the config, report command/event counts and exit",
    )
    return parser.parse_args(argv)


def find_config(explicit: str | None) -> str | None:
    if explicit:
        return explicit
    return next((p for p in CONFIG_SEARCH_PATHS if Path(p).exists()), None)


def check_config(config_path: str, logger: logging.Logger) -> bool:
    """Load *config_path* and summarise it. False if it does not validate."""
    from .config import load_config

    try:
        config = load_config(config_path)
    except Exception as e:
        logger.error("Config %s is invalid: %s", config_path, e)
        return False
    logger.info(
        "Config %s is valid: %d command(s), %d extension(s), %d event(s), points %s",
        config_path,
        len(config.commands.items),
        len(config.commands.extensions),
        len(config.events),
        "enabled" if config.points.enabled else "disabled",
    )
    if not config.twitch.access_token or not config.twitch.client_id:
        logger.warning("No Twitch credentials set; the service would run without chat or events")
    return True


def install_signal_handlers(app: StageApp) -> None:
    """Stop on SIGTERM/SIGINT, reload points settings on SIGHUP (Unix only)."""
    if sys.platform == "win32":
        return
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))
    loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.ensure_future(app.reload_config()))


async def main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging(args.log_level)
    logger = logging.getLogger("stage")

    config_path = find_config(args.config)
    if not config_path:
        logger.error("No config file found. Pass --config or create ./config.yaml from config.example.yaml.")
        sys.exit(1)

    if args.validate_config:
        if not check_config(config_path, logger):
            sys.exit(1)
        return

    app = StageApp(config_path)
    install_signal_handlers(app)
    try:
        await app.start()
    except KeyboardInterrupt:
        pass
    finally:
        await app.stop()


def main() -> None:
    """Console-script entry point (``stream-stage``)."""
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
