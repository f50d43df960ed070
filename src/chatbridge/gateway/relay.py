"""Relay: canonical lifecycle events -> the other platform.

Consumes change-feed events only; it never sees native platform events, so
a copy it sends cannot come back to it as new content.
"""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatbridge.adapters.base import PlatformClient, platform_call
from chatbridge.constants import ONE_WAY, TELEGRAM, Platform, other_platform
from chatbridge.errors import DestinationSendFailure, MalformedEvent, TransientStoreFailure
from chatbridge.events import LifecycleEvent, MessageCreated, MessageDeleted, MessageEdited
from chatbridge.formatting import format_message
from chatbridge.gateway.lifecycle import LifecyclePropagator, author_name
from chatbridge.models import Channel, Message, MessageMapping
from chatbridge.store.base import Store


def relay_target(channel: Channel, origin: Platform) -> Platform | None:
    """Destination platform for a message from `origin`, or None if the
    channel's direction does not relay it."""
    if channel.direction == ONE_WAY and origin != TELEGRAM:
        return None
    return other_platform(origin)


class Relay:
    """Dispatches lifecycle events: creates are sent here, edits and deletes
    go to the LifecyclePropagator."""

    def __init__(
        self,
        store: Store,
        clients: Mapping[Platform, PlatformClient],
        *,
        send_timeout: float = 15.0,
        lifecycle: LifecyclePropagator | None = None,
    ) -> None:
        self._store = store
        self._clients = clients
        self._send_timeout = send_timeout
        self._lifecycle = lifecycle or LifecyclePropagator(store, clients, send_timeout=send_timeout)

    async def handle(self, evt: LifecycleEvent) -> None:
        """Entry point for the change feed. Raises BridgeError subclasses when
        the change should be redelivered."""
        if isinstance(evt, MessageCreated):
            await self.relay_created(evt.message)
        elif isinstance(evt, MessageEdited):
            await self._lifecycle.propagate_edit(evt)
        elif isinstance(evt, MessageDeleted):
            await self._lifecycle.propagate_delete(evt)
        else:
            raise MalformedEvent(f"Unsupported lifecycle event {type(evt).__name__}", code="unsupported_event")

    async def relay_created(self, message: Message) -> MessageMapping | None:
        """Send a copy of `message` to the other platform and record the mapping.

        Returns the mapping, or None when nothing is relayed.
        """
        if message.is_deleted:
            logger.debug("Relay: {} message {} already deleted, not relaying", message.origin, message.id)
            return None
        channel = await self._store.get_channel(message.channel_id)
        if channel is None:
            logger.warning("Relay: unknown channel {} for message {}", message.channel_id, message.id)
            return None

        origin = message.origin
        target = relay_target(channel, origin)
        if target is None:
            logger.debug("Relay: one-way channel {} ignores {} message {}", channel.id, origin, message.id)
            return None

        existing = await self._store.get_mapping(channel.id, origin, message.id)
        if existing is not None and existing.get(target) is not None:
            logger.debug("Relay: {} message {} already relayed as {}", origin, message.id, existing.get(target))
            return existing

        chat_id = channel.chat_id(target)
        if chat_id is None:
            logger.debug("Relay: channel {} has no {} chat", channel.id, target)
            return None
        client = self._clients.get(target)
        if client is None:
            logger.warning("Relay: no {} client; message {} not relayed", target, message.id)
            return None

        text = format_message(message, await author_name(self._store, message), origin, channel.direction)
        try:
            copy_id = await platform_call(
                target,
                "send",
                client.send_message(chat_id, text),
                timeout=self._send_timeout,
            )
        except DestinationSendFailure as exc:
            logger.warning("Relay: {} -> {} send failed for message {}: {}", origin, target, message.id, exc)
            raise

        # The copy exists now; retry the store write rather than resending
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=0.2, max=2),
                retry=retry_if_exception_type(TransientStoreFailure),
                reraise=True,
            ):
                with attempt:
                    mapping = await self._store.upsert_mapping(
                        MessageMapping.for_pair(channel.id, origin, message.id, str(copy_id))
                    )
        except TransientStoreFailure as exc:
            # Redelivery will send a second copy; the ids let an operator
            # remove the first one.
            logger.warning(
                "Relay: unmapped copy: sent {} message {} as {} {} but could not store the mapping",
                origin,
                message.id,
                target,
                copy_id,
            )
            raise TransientStoreFailure(
                f"unmapped copy {target}:{copy_id} of {origin}:{message.id}: {exc}",
                code="unmapped_copy",
                details={
                    "channel_id": channel.id,
                    "origin": origin,
                    "message_id": message.id,
                    "target": target,
                    "copy_id": str(copy_id),
                },
                original_error=exc,
            ) from exc
        logger.info("Relay: {} {} -> {} {} (channel {})", origin, message.id, target, copy_id, channel.id)
        return mapping
