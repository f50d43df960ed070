"""Edit/delete propagation to the relayed copy of a message."""

from __future__ import annotations

from collections.abc import Mapping

from loguru import logger

from chatbridge.adapters.base import PlatformClient, platform_call
from chatbridge.constants import Platform, other_platform
from chatbridge.errors import DestinationSendFailure
from chatbridge.events import MessageDeleted, MessageEdited
from chatbridge.formatting import format_message
from chatbridge.models import Channel, Message
from chatbridge.store.base import Store


async def author_name(store: Store, message: Message) -> str:
    """Display name for a message's author, falling back to the raw id."""
    user = await store.get_user(message.author_platform, message.author_id)
    return user.username if user and user.username else message.author_id


class LifecyclePropagator:
    """Finds the counterpart of a canonical message through its mapping and
    edits or deletes it on the other platform.

    No mapping means nothing was relayed (one-way channel, failed relay, or
    the create is still in flight): that is a silent no-op.
    """

    def __init__(
        self,
        store: Store,
        clients: Mapping[Platform, PlatformClient],
        *,
        send_timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._clients = clients
        self._send_timeout = send_timeout

    async def _counterpart(self, message: Message) -> tuple[Channel, Platform, str, str, PlatformClient] | None:
        origin = message.origin
        target = other_platform(origin)
        mapping = await self._store.get_mapping(message.channel_id, origin, message.id)
        if mapping is None:
            logger.debug("Lifecycle: no mapping for {} message {}", origin, message.id)
            return None
        counterpart_id = mapping.counterpart(origin)
        if counterpart_id is None:
            logger.debug("Lifecycle: {} message {} has no {} copy yet", origin, message.id, target)
            return None
        channel = await self._store.get_channel(message.channel_id)
        if channel is None:
            logger.warning("Lifecycle: channel {} vanished", message.channel_id)
            return None
        chat_id = channel.chat_id(target)
        client = self._clients.get(target)
        if chat_id is None or client is None:
            logger.warning("Lifecycle: {} side of channel {} is unavailable", target, channel.id)
            return None
        return channel, target, chat_id, counterpart_id, client

    async def propagate_edit(self, evt: MessageEdited) -> None:
        """Rewrite the counterpart's text with the new content."""
        message = evt.message
        if evt.previous is not None and evt.previous.content == message.content:
            return
        found = await self._counterpart(message)
        if found is None:
            return
        channel, target, chat_id, counterpart_id, client = found
        text = format_message(message, await author_name(self._store, message), message.origin, channel.direction)
        try:
            await platform_call(
                target,
                "edit",
                client.edit_message(chat_id, counterpart_id, text),
                timeout=self._send_timeout,
            )
        except DestinationSendFailure as exc:
            logger.warning("Lifecycle: edit of {} {} failed: {}", target, counterpart_id, exc)
            raise
        logger.info("Lifecycle: edited {} message {} (origin {} {})", target, counterpart_id, message.origin, message.id)

    async def propagate_delete(self, evt: MessageDeleted) -> None:
        """Delete the counterpart. The mapping row is kept."""
        message = evt.message
        found = await self._counterpart(message)
        if found is None:
            return
        channel, target, chat_id, counterpart_id, client = found
        try:
            await platform_call(
                target,
                "delete",
                client.delete_message(chat_id, counterpart_id),
                timeout=self._send_timeout,
            )
        except DestinationSendFailure as exc:
            logger.warning("Lifecycle: delete of {} {} failed: {}", target, counterpart_id, exc)
            raise
        logger.info("Lifecycle: deleted {} message {} (origin {} {})", target, counterpart_id, message.origin, message.id)
