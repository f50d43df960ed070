"""Ingestion: native platform events -> canonical Message rows.

Ingestion never talks to a platform. Persisting the row is what triggers the
relay, through the change feed, so a relayed copy arriving back as a native
event from the other platform is a separate path and is also filtered here.
"""

from __future__ import annotations

from collections.abc import Iterable

from loguru import logger

from chatbridge.constants import Platform, parse_platform
from chatbridge.errors import BridgeError, MalformedEvent, ReconciliationFailure, TransientStoreFailure
from chatbridge.events import MessageDeleteIn, MessageEditIn, MessageIn
from chatbridge.gateway.channels import ChannelResolver
from chatbridge.gateway.tasks import TaskPool
from chatbridge.identity import IdentityReconciler, NativeAuthor
from chatbridge.models import Channel, Message
from chatbridge.store.base import Store


class IngestionPipeline:
    """Bus target for native events. Each event is processed as its own task."""

    def __init__(
        self,
        store: Store,
        resolver: ChannelResolver,
        reconciler: IdentityReconciler,
        *,
        relay_identities: Iterable[tuple[str, str]] = (),
        pool: TaskPool | None = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._reconciler = reconciler
        self._relay_identities: set[tuple[str, str]] = set(relay_identities)
        self._pool = pool or TaskPool("ingest")

    @property
    def pool(self) -> TaskPool:
        return self._pool

    def add_relay_identity(self, platform: str, account_id: str) -> None:
        """Never ingest messages from this account (our own bots)."""
        self._relay_identities.add((platform, account_id))

    def set_relay_identities(self, identities: Iterable[tuple[str, str]]) -> None:
        self._relay_identities = set(identities)

    def accept_event(self, source: str, evt: object) -> bool:
        return isinstance(evt, (MessageIn, MessageEditIn, MessageDeleteIn))

    def push_event(self, source: str, evt: object) -> None:
        label = f"{type(evt).__name__} {getattr(evt, 'origin', '?')}/{getattr(evt, 'message_id', '?')}"
        self._pool.spawn(self.handle(evt), label=label)

    async def handle(self, evt: object) -> None:
        """Process one native event; failures are logged and the event dropped."""
        try:
            if isinstance(evt, MessageIn):
                await self.ingest(evt)
            elif isinstance(evt, MessageEditIn):
                await self.ingest_edit(evt)
            elif isinstance(evt, MessageDeleteIn):
                await self.ingest_delete(evt)
            else:
                raise MalformedEvent(f"Unsupported event {type(evt).__name__}", code="unsupported_event")
        except MalformedEvent as exc:
            logger.warning("Ingest: dropping malformed event: {}", exc)
        except ReconciliationFailure as exc:
            logger.warning("Ingest: identity unresolved, dropping message: {}", exc)
        except TransientStoreFailure as exc:
            logger.warning("Ingest: store unavailable, dropping event: {}", exc)
        except BridgeError as exc:
            logger.error("Ingest: {} ({})", exc, exc.code)

    def _is_relay_author(self, platform: str, author_id: str, is_bot: bool) -> bool:
        return is_bot or (platform, author_id) in self._relay_identities

    async def _channel(self, origin: str, chat_id: str) -> tuple[Platform, Channel | None]:
        try:
            platform = parse_platform(origin)
        except ValueError as exc:
            raise MalformedEvent(f"Unknown origin {origin!r}", code="bad_origin", original_error=exc) from exc
        if not chat_id:
            raise MalformedEvent("Event without chat id", code="missing_chat_id")
        return platform, await self._resolver.resolve(platform, chat_id)

    async def ingest(self, evt: MessageIn) -> Message | None:
        """Persist a native message. Returns the new Message, or None when the
        chat is untracked, the author is a relay, or the event is a duplicate."""
        if self._is_relay_author(evt.origin, evt.author_id, evt.is_bot):
            logger.debug("Ingest: ignoring relay-authored {} message {}", evt.origin, evt.message_id)
            return None
        if not evt.message_id or not evt.author_id:
            raise MalformedEvent("Message event without message or author id", code="missing_ids")

        platform, channel = await self._channel(evt.origin, evt.chat_id)
        if channel is None:
            return None

        author = await self._reconciler.reconcile(
            NativeAuthor(
                id=evt.author_id,
                platform=platform,
                username=evt.author_display or evt.author_id,
                avatar_ref=evt.avatar_ref,
            )
        )

        message = Message(
            id=evt.message_id,
            channel_id=channel.id,
            author_id=author.id,
            author_platform=author.platform,
            content=evt.content,
            created_at=evt.timestamp,
        )
        if not await self._store.insert_message(message):
            logger.debug("Ingest: duplicate {} message {} in {}", platform, evt.message_id, channel.id)
            return None
        logger.info("Ingest: {} message {} -> channel {}", platform, evt.message_id, channel.id)
        return message

    async def ingest_edit(self, evt: MessageEditIn) -> Message | None:
        """Apply a native edit to the canonical row (emits an update change)."""
        if self._is_relay_author(evt.origin, evt.author_id, evt.is_bot):
            return None
        platform, channel = await self._channel(evt.origin, evt.chat_id)
        if channel is None:
            return None
        updated = await self._store.update_message_content(channel.id, evt.message_id, evt.content, evt.timestamp)
        if updated is None:
            logger.debug("Ingest: edit of {} message {} changed nothing", platform, evt.message_id)
            return None
        logger.info("Ingest: {} message {} edited in channel {}", platform, evt.message_id, channel.id)
        return updated

    async def ingest_delete(self, evt: MessageDeleteIn) -> Message | None:
        """Soft-delete the canonical row (emits an update change with deleted_at)."""
        platform, channel = await self._channel(evt.origin, evt.chat_id)
        if channel is None:
            return None
        deleted = await self._store.soft_delete_message(channel.id, evt.message_id, evt.timestamp)
        if deleted is None:
            logger.debug("Ingest: delete of {} message {} changed nothing", platform, evt.message_id)
            return None
        logger.info("Ingest: {} message {} deleted in channel {}", platform, evt.message_id, channel.id)
        return deleted
