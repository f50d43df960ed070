"""Bridge entrypoint. Loads config, runs the bridge until SIGINT/SIGTERM."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

import yaml
from loguru import logger

from chatbridge import __version__
from chatbridge.app import BridgeApp
from chatbridge.config import Config, cfg, load_config_with_env
from chatbridge.errors import BridgeConfigurationError, TransientStoreFailure

# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["discord", "telegram", "httpx", "sqlalchemy", "aiosqlite", "asyncio"]

# Chatty below WARNING even when we run at DEBUG
_QUIET_LIBRARIES = {"httpx", "sqlalchemy", "aiosqlite", "discord.gateway", "discord.http"}


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        msg = record.getMessage().replace("{", "{{").replace("}", "}}")
        logger.patch(
            lambda r: r.update(
                name=record.name,
                function=record.funcName,
                line=record.lineno,
            ),
        ).opt(exception=record.exc_info).log(level, msg)


def _intercept_logging(level: str) -> None:
    """Route third-party library logs to loguru."""
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel(level)
    for lib in _QUIET_LIBRARIES:
        logging.getLogger(lib).setLevel(max(logging.WARNING, logging.getLevelName(level)))


def setup_logging(verbose: bool = False) -> str:
    """Configure loguru and replace default logging. Returns the level.

    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO.
    """
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=("<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"),
    )
    _intercept_logging(level)
    return level


def reload_config(config_path: Path) -> Config:
    """Load config from path and update global cfg."""
    data = load_config_with_env(config_path)
    cfg.reload(data)
    return cfg


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chatbridge: Telegram <-> Discord message mirror")
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("config.yaml"),
        help="Path to config file (default: config.yaml)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


async def _on_sighup(app: BridgeApp, config_path: Path) -> None:
    previous = cfg.raw
    try:
        config = reload_config(config_path)
        await app.reload(config)
    except (BridgeConfigurationError, yaml.YAMLError) as exc:
        logger.error("Config reload failed, keeping previous config: {}", exc)
    except TransientStoreFailure as exc:
        cfg.reload(previous, validate=False)
        logger.error("Config reload could not sync channels, keeping previous config: {}", exc)
    else:
        logger.info("Config reloaded (SIGHUP)")


async def run(app: BridgeApp, config_path: Path, stop: asyncio.Event | None = None) -> None:
    """Start the bridge, wait for a stop signal, shut down gracefully."""
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    reloads: set[asyncio.Task[None]] = set()

    def on_sighup() -> None:
        task = asyncio.create_task(_on_sighup(app, config_path))
        reloads.add(task)
        task.add_done_callback(reloads.discard)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, on_sighup)

    try:
        await app.start()
        await stop.wait()
        logger.info("Bridge shutting down")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM, getattr(signal, "SIGHUP", None)):
            if sig is not None:
                loop.remove_signal_handler(sig)
        await app.stop()


def main() -> None:
    """Main entrypoint."""
    args = build_parser().parse_args()
    setup_logging(args.verbose)

    if not args.config.exists():
        logger.error("Config file not found: {}", args.config)
        sys.exit(1)

    try:
        config = reload_config(args.config)
    except (BridgeConfigurationError, yaml.YAMLError) as exc:
        logger.error("Invalid config {}: {}", args.config, exc)
        sys.exit(1)
    logger.info("Config loaded from {}", args.config)

    try:
        asyncio.run(run(BridgeApp(config), args.config))
    except BridgeConfigurationError as exc:
        logger.error("Invalid config {}: {}", args.config, exc)
        sys.exit(1)
    except TransientStoreFailure as exc:
        logger.error("Store unavailable: {}", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
