"""Configuration: YAML + env overlay."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from chatbridge.errors import BridgeConfigurationError
from chatbridge.gateway.channels import channels_from_config

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///chatbridge.db"

# Env keys that override config (loaded once per reload)
_ENV_OVERRIDE_KEYS = (
    "BRIDGE_DATABASE_URL",
    "BRIDGE_TELEGRAM_TOKEN",
    "TELEGRAM_TOKEN",
    "TELEGRAM_BOT_TOKEN",
    "BRIDGE_DISCORD_TOKEN",
    "DISCORD_TOKEN",
    "DISCORD_BOT_TOKEN",
)


def _load_env_overrides() -> dict[str, str]:
    return {k: os.environ.get(k, "") for k in _ENV_OVERRIDE_KEYS}


def load_config(path: str | Path) -> dict[str, Any]:
    """Load config from YAML file. Use SafeLoader. Returns raw dict."""
    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: {}", path)
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        logger.error("Failed to parse config {}: {}", path, exc)
        raise
    if not isinstance(data, dict):
        if data is not None:
            logger.warning("Config file {} has invalid structure (expected dict)", path)
        return {}
    return data


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Load config from YAML after loading .env into the process env."""
    from dotenv import load_dotenv

    load_dotenv()
    return load_config(path)


class Config:
    """Config accessor with attribute-style access for nested keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}
        self._env: dict[str, str] = _load_env_overrides()

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data (e.g. on SIGHUP reload). Invalid data leaves the
        previous config in place."""
        previous, previous_env = self._data, self._env
        self._data = data or {}
        self._env = _load_env_overrides()
        if validate:
            try:
                self._validate()
            except BridgeConfigurationError:
                self._data, self._env = previous, previous_env
                raise
        logger.debug("Config reloaded: {} channels", len(self.channels))

    def _validate(self) -> None:
        """Validate config structure; raise BridgeConfigurationError on failure."""
        channels = self._data.get("channels")
        if channels is not None and not isinstance(channels, list):
            raise BridgeConfigurationError(
                "channels must be a list",
                code="invalid_channels",
                details={"type": type(channels).__name__},
            )
        # Duplicate chats, bad directions, missing ids
        channels_from_config(channels or [])
        identities = self._data.get("relay_identities")
        if identities is not None and not isinstance(identities, list):
            raise BridgeConfigurationError(
                "relay_identities must be a list",
                code="invalid_relay_identities",
                details={"type": type(identities).__name__},
            )
        for key in ("send_timeout_seconds", "shutdown_timeout_seconds", "feed_poll_interval_seconds"):
            try:
                value = float(self._data.get(key, 1))
            except (TypeError, ValueError) as exc:
                raise BridgeConfigurationError(
                    f"{key} must be a number",
                    code="invalid_number",
                    details={"key": key},
                    original_error=exc,
                ) from exc
            if value <= 0:
                raise BridgeConfigurationError(
                    f"{key} must be positive",
                    code="invalid_number",
                    details={"key": key, "value": value},
                )

    @property
    def raw(self) -> dict[str, Any]:
        """Raw config dict."""
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path (e.g. 'channels.0.id')."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            elif isinstance(obj, list) and part.isdigit() and int(part) < len(obj):
                obj = obj[int(part)]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def database_url(self) -> str:
        env_val = self._env.get("BRIDGE_DATABASE_URL", "")
        if env_val:
            return env_val
        return str(self._data.get("database_url") or DEFAULT_DATABASE_URL)

    @property
    def telegram_token(self) -> str | None:
        keys = ("BRIDGE_TELEGRAM_TOKEN", "TELEGRAM_TOKEN", "TELEGRAM_BOT_TOKEN")
        return next((self._env[k] for k in keys if self._env.get(k)), None)

    @property
    def discord_token(self) -> str | None:
        keys = ("BRIDGE_DISCORD_TOKEN", "DISCORD_TOKEN", "DISCORD_BOT_TOKEN")
        return next((self._env[k] for k in keys if self._env.get(k)), None)

    @property
    def channels(self) -> list[dict[str, Any]]:
        """Channel definition list."""
        c = self._data.get("channels")
        return c if isinstance(c, list) else []

    @property
    def relay_identities(self) -> list[tuple[str, str]]:
        """Extra (platform, account id) pairs whose messages are never ingested."""
        val = self._data.get("relay_identities")
        if not isinstance(val, list):
            return []
        result: list[tuple[str, str]] = []
        for item in val:
            if isinstance(item, dict) and item.get("platform") and item.get("id"):
                result.append((str(item["platform"]).lower(), str(item["id"])))
        return result

    @property
    def channel_cache_ttl_seconds(self) -> int:
        return int(self._data.get("channel_cache_ttl_seconds", 60))

    @property
    def send_timeout_seconds(self) -> float:
        return float(self._data.get("send_timeout_seconds", 15))

    @property
    def shutdown_timeout_seconds(self) -> float:
        return float(self._data.get("shutdown_timeout_seconds", 20))

    @property
    def feed_poll_interval_seconds(self) -> float:
        return float(self._data.get("feed_poll_interval_seconds", 1.0))

    @property
    def feed_batch_size(self) -> int:
        return int(self._data.get("feed_batch_size", 100))

    @property
    def feed_max_attempts(self) -> int:
        return int(self._data.get("feed_max_attempts", 5))

    @property
    def feed_retry_backoff_seconds(self) -> float:
        return float(self._data.get("feed_retry_backoff_seconds", 2))

    @property
    def feed_retry_backoff_max_seconds(self) -> float:
        return float(self._data.get("feed_retry_backoff_max_seconds", 60))


# Global config instance (set by __main__)
cfg: Config = Config({})
