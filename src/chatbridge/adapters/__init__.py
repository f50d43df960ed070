"""Platform adapters."""

from chatbridge.adapters.base import AdapterBase, PlatformClient, platform_call
from chatbridge.adapters.disc import DiscordAdapter
from chatbridge.adapters.tg import TelegramAdapter

__all__ = ["AdapterBase", "DiscordAdapter", "PlatformClient", "TelegramAdapter", "platform_call"]
