"""Component graph: store, bus, ingestion, change feed, relay, adapters."""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from chatbridge.adapters.base import AdapterBase, PlatformClient
from chatbridge.adapters.disc import DiscordAdapter
from chatbridge.adapters.tg import TelegramAdapter
from chatbridge.config import Config
from chatbridge.constants import Platform
from chatbridge.events import config_reload
from chatbridge.gateway import (
    Bus,
    ChangeFeed,
    ChannelResolver,
    IngestionPipeline,
    Relay,
    TaskPool,
    channels_from_config,
    sync_channels,
)
from chatbridge.identity import IdentityReconciler
from chatbridge.store import Store, create_store


class BridgeApp:
    """Owns the running bridge.

    Native events flow adapters -> bus -> ingestion -> store; the store's
    change feed drives the relay, which writes through the adapters'
    platform clients.
    """

    def __init__(
        self,
        config: Config,
        *,
        store: Store | None = None,
        adapters: Mapping[Platform, AdapterBase] | None = None,
    ) -> None:
        self.config = config
        self.store = store or create_store(config.database_url)
        self.bus = Bus()
        self.resolver = ChannelResolver(self.store, ttl=config.channel_cache_ttl_seconds)
        self.reconciler = IdentityReconciler(self.store)
        self._own_identities: set[tuple[str, str]] = set()
        self.ingest = IngestionPipeline(
            self.store,
            self.resolver,
            self.reconciler,
            relay_identities=config.relay_identities,
            pool=TaskPool("ingest"),
        )
        self.adapters: dict[Platform, AdapterBase] = dict(adapters) if adapters is not None else self._make_adapters()
        self.clients: dict[Platform, PlatformClient] = dict(self.adapters)  # type: ignore[arg-type]
        self.relay = Relay(self.store, self.clients, send_timeout=config.send_timeout_seconds)
        self.feed = ChangeFeed(
            self.store,
            self.relay.handle,
            poll_interval=config.feed_poll_interval_seconds,
            batch_size=config.feed_batch_size,
            max_attempts=config.feed_max_attempts,
            backoff=config.feed_retry_backoff_seconds,
            backoff_max=config.feed_retry_backoff_max_seconds,
            pool=TaskPool("feed"),
        )

    def _make_adapters(self) -> dict[Platform, AdapterBase]:
        adapters: dict[Platform, AdapterBase] = {}
        if self.config.telegram_token:
            adapters["telegram"] = TelegramAdapter(
                self.bus, self.config.telegram_token, on_identity=self.remember_identity
            )
        else:
            logger.warning("TELEGRAM_TOKEN not set; Telegram adapter disabled")
        if self.config.discord_token:
            adapters["discord"] = DiscordAdapter(
                self.bus, self.config.discord_token, on_identity=self.remember_identity
            )
        else:
            logger.warning("DISCORD_TOKEN not set; Discord adapter disabled")
        return adapters

    def remember_identity(self, platform: str, account_id: str) -> None:
        """Record one of our own bot accounts; its messages are never ingested."""
        self._own_identities.add((platform, account_id))
        self.ingest.add_relay_identity(platform, account_id)
        logger.info("Relay identity: {} {}", platform, account_id)

    async def start(self) -> None:
        """Connect the store, sync channels, then start adapters and the feed."""
        channels = channels_from_config(self.config.channels)
        await self.store.connect()
        await sync_channels(self.store, channels)
        self.bus.register(self.ingest)
        self.bus.register(self.resolver)
        for name, adapter in self.adapters.items():
            logger.info("Starting {} adapter", name)
            await adapter.start()
        self.feed.start()
        logger.info("Bridge ready: {} channels, adapters: {}", len(channels), ", ".join(self.adapters) or "none")

    async def reload(self, config: Config) -> None:
        """Apply a reloaded config: channels, relay identities, resolver cache."""
        channels = channels_from_config(config.channels)
        await sync_channels(self.store, channels)
        self.config = config
        self.ingest.set_relay_identities(set(config.relay_identities) | self._own_identities)
        _, evt = config_reload()
        self.bus.publish("main", evt)

    async def stop(self) -> None:
        """Graceful shutdown: stop inbound events, drain ingestion, drain
        relays, then close the platform clients and the store."""
        timeout = self.config.shutdown_timeout_seconds
        for name, adapter in self.adapters.items():
            try:
                await adapter.stop_inbound()
            except Exception as exc:
                logger.exception("Failed to stop {} inbound events: {}", name, exc)
        self.bus.close()
        self.bus.unregister(self.ingest)
        self.bus.unregister(self.resolver)
        await self.ingest.pool.close(timeout)
        # Relays still in flight need open clients
        await self.feed.stop(timeout)
        for name, adapter in self.adapters.items():
            logger.info("Stopping {} adapter", name)
            try:
                await adapter.stop()
            except Exception as exc:
                logger.exception("Failed to stop {} adapter: {}", name, exc)
        await self.store.close()
        logger.info(
            "Bridge stopped: {} events delivered, {} dropped",
            sum(self.bus.delivered.values()),
            sum(self.bus.dropped.values()),
        )
