"""Channel resolution: native chat id -> canonical Channel."""

from __future__ import annotations

from typing import Any

from cachetools import TTLCache
from loguru import logger

from chatbridge.constants import PLATFORMS, TWO_WAY, Platform, parse_direction
from chatbridge.errors import BridgeConfigurationError
from chatbridge.events import ConfigReload
from chatbridge.models import Channel
from chatbridge.store.base import Store


def channels_from_config(raw: list[Any]) -> list[Channel]:
    """Parse the `channels:` config list.

    Each item: {id, telegram_chat_id?, discord_chat_id?, direction?}.
    A native chat may belong to at most one channel.
    """
    channels: list[Channel] = []
    seen_ids: set[str] = set()
    seen_chats: dict[tuple[Platform, str], str] = {}
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise BridgeConfigurationError(
                f"channels[{i}] must be a dict", code="invalid_channel_item", details={"index": i}
            )
        channel_id = str(item.get("id") or "").strip()
        if not channel_id:
            raise BridgeConfigurationError(
                f"channels[{i}] missing id", code="missing_channel_id", details={"index": i}
            )
        if channel_id in seen_ids:
            raise BridgeConfigurationError(
                f"Duplicate channel id {channel_id!r}", code="duplicate_channel", details={"index": i}
            )
        try:
            direction = parse_direction(item.get("direction", TWO_WAY))
        except ValueError as exc:
            raise BridgeConfigurationError(
                f"channels[{i}] has invalid direction {item.get('direction')!r}",
                code="invalid_direction",
                details={"index": i},
                original_error=exc,
            ) from exc

        channel = Channel(
            id=channel_id,
            telegram_chat_id=_chat_id(item.get("telegram_chat_id")),
            discord_chat_id=_chat_id(item.get("discord_chat_id")),
            direction=direction,
        )
        for platform in PLATFORMS:
            chat_id = channel.chat_id(platform)
            if chat_id is None:
                continue
            owner = seen_chats.get((platform, chat_id))
            if owner is not None:
                raise BridgeConfigurationError(
                    f"{platform} chat {chat_id} is bound to both {owner!r} and {channel_id!r}",
                    code="duplicate_chat",
                    details={"platform": platform, "chat_id": chat_id},
                )
            seen_chats[(platform, chat_id)] = channel_id
        if channel.telegram_chat_id is None and channel.discord_chat_id is None:
            logger.warning("Channel {} has no chats bound; it will never relay", channel_id)
        seen_ids.add(channel_id)
        channels.append(channel)
    return channels


def _chat_id(value: Any) -> str | None:
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


async def sync_channels(store: Store, channels: list[Channel]) -> None:
    """Write configured channels into the store.

    Stored channels whose bindings changed or that left the config are first
    detached from their chats, so a chat can move between channels and a
    removed channel stops resolving. Rows are never deleted: messages and
    mappings still reference them.
    """
    wanted = {c.id: c for c in channels}
    for stored in await store.list_channels():
        target = wanted.get(stored.id)
        if target == stored or (stored.telegram_chat_id is None and stored.discord_chat_id is None):
            continue
        if target is None:
            logger.info("Channels: {} removed from config, detaching its chats", stored.id)
        await store.upsert_channel(Channel(id=stored.id, direction=stored.direction))
    for channel in channels:
        await store.upsert_channel(channel)
    one_way = sum(1 for c in channels if c.direction != TWO_WAY)
    logger.info("Channels: synced {} ({} one-way)", len(channels), one_way)


class ChannelResolver:
    """Looks up the channel bound to a native chat, with a TTL cache.

    Misses are cached too: most chats a bot sees are not bridged.
    """

    def __init__(self, store: Store, *, maxsize: int = 1024, ttl: int = 60) -> None:
        self._store = store
        self._cache: TTLCache[tuple[str, str], Channel | None] = TTLCache(maxsize=maxsize, ttl=float(ttl))

    async def resolve(self, platform: Platform, chat_id: str) -> Channel | None:
        """Channel for (platform, chat_id), or None when the chat is untracked."""
        key = (platform, chat_id)
        try:
            return self._cache[key]
        except KeyError:
            channel = await self._store.find_channel(platform, chat_id)
            self._cache[key] = channel
            return channel

    def invalidate(self) -> None:
        """Drop cached lookups (config reload)."""
        self._cache.clear()

    def accept_event(self, source: str, evt: object) -> bool:
        return isinstance(evt, ConfigReload)

    def push_event(self, source: str, evt: object) -> None:
        self.invalidate()
        logger.debug("Channels: resolver cache cleared ({})", source)
