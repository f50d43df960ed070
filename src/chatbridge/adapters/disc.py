"""Discord adapter: gateway client, native events to bus, outbound client."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import discord
from discord import (
    AllowedMentions,
    Intents,
    Message,
    RawBulkMessageDeleteEvent,
    RawMessageDeleteEvent,
    RawMessageUpdateEvent,
)
from loguru import logger

from chatbridge.adapters.base import AdapterBase
from chatbridge.constants import DISCORD
from chatbridge.errors import DestinationSendFailure
from chatbridge.events import message_delete_in, message_edit_in, message_in

if TYPE_CHECKING:
    from chatbridge.gateway.bus import Bus


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _failure(action: str, exc: discord.DiscordException) -> DestinationSendFailure:
    return DestinationSendFailure(
        f"discord {action} failed: {exc}",
        code="discord_error",
        details={"platform": DISCORD, "action": action},
        original_error=exc,
    )


class DiscordAdapter(AdapterBase):
    """Discord side of the bridge: publishes MessageIn / MessageEditIn /
    MessageDeleteIn and sends, edits and deletes relayed copies."""

    def __init__(
        self,
        bus: Bus,
        token: str,
        *,
        client: discord.Client | None = None,
        on_identity: Callable[[str, str], None] | None = None,
    ) -> None:
        self._bus = bus
        self._token = token
        self._client = client
        self._on_identity = on_identity
        self._client_task: asyncio.Task | None = None
        self._inbound = True

    @property
    def name(self) -> str:
        return DISCORD

    @property
    def self_id(self) -> str | None:
        """Bot account id, known once the gateway is ready."""
        client = self._client
        if client is None or client.user is None:
            return None
        return str(client.user.id)

    def _is_own(self, author_id: Any) -> bool:
        return author_id is not None and str(author_id) == self.self_id

    def _publish(self, evt: object) -> None:
        if self._inbound:
            self._bus.publish(DISCORD, evt)

    async def _on_ready(self) -> None:
        logger.info("Discord bot ready: {}", self._client.user if self._client else None)
        if self._on_identity and self.self_id:
            self._on_identity(DISCORD, self.self_id)

    async def _on_message(self, message: Message) -> None:
        """New message -> MessageIn. Bots and webhooks are never relayed."""
        if message.author.bot or message.webhook_id or self._is_own(message.author.id):
            return
        content = message.content or ""
        if not content.strip():
            return
        avatar = message.author.display_avatar
        _, evt = message_in(
            origin=DISCORD,
            chat_id=str(message.channel.id),
            message_id=str(message.id),
            author_id=str(message.author.id),
            author_display=message.author.display_name or message.author.name,
            content=content,
            timestamp=message.created_at,
            avatar_ref=str(avatar.url) if avatar else None,
            is_bot=bool(message.author.bot),
        )
        self._publish(evt)

    async def _on_raw_message_edit(self, payload: RawMessageUpdateEvent) -> None:
        """Edit -> MessageEditIn. Raw events also cover uncached messages."""
        data = payload.data or {}
        if "content" not in data:
            # Embed-only update (link preview), not an edit by the author
            return
        author = data.get("author") or {}
        if data.get("webhook_id") or self._is_own(author.get("id")):
            return
        _, evt = message_edit_in(
            origin=DISCORD,
            chat_id=str(payload.channel_id),
            message_id=str(payload.message_id),
            content=data.get("content") or "",
            timestamp=_parse_timestamp(data.get("edited_timestamp")),
            author_id=str(author.get("id") or ""),
            is_bot=bool(author.get("bot", False)),
        )
        self._publish(evt)

    async def _on_raw_message_delete(self, payload: RawMessageDeleteEvent) -> None:
        """Delete -> MessageDeleteIn."""
        _, evt = message_delete_in(
            origin=DISCORD,
            chat_id=str(payload.channel_id),
            message_id=str(payload.message_id),
        )
        self._publish(evt)

    async def _on_raw_bulk_message_delete(self, payload: RawBulkMessageDeleteEvent) -> None:
        """Bulk delete -> one MessageDeleteIn per message."""
        for message_id in sorted(payload.message_ids):
            _, evt = message_delete_in(
                origin=DISCORD,
                chat_id=str(payload.channel_id),
                message_id=str(message_id),
            )
            self._publish(evt)

    async def fetch_channel(self, chat_id: str) -> Any:
        client = self._client
        if client is None:
            raise DestinationSendFailure("discord adapter is not running", code="not_running")
        channel = client.get_channel(int(chat_id))
        if channel is not None:
            return channel
        try:
            return await client.fetch_channel(int(chat_id))
        except discord.DiscordException as exc:
            raise _failure("fetch_channel", exc) from exc

    async def _messageable(self, chat_id: str) -> Any:
        channel = await self.fetch_channel(chat_id)
        if not hasattr(channel, "send") or not hasattr(channel, "get_partial_message"):
            raise DestinationSendFailure(
                f"discord channel {chat_id} is not text-based",
                code="not_text_channel",
                details={"platform": DISCORD, "chat_id": chat_id},
            )
        return channel

    async def send_message(self, chat_id: str, text: str) -> str:
        channel = await self._messageable(chat_id)
        try:
            sent = await channel.send(text, allowed_mentions=AllowedMentions.none())
        except discord.DiscordException as exc:
            raise _failure("send", exc) from exc
        return str(sent.id)

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> None:
        channel = await self._messageable(chat_id)
        try:
            await channel.get_partial_message(int(message_id)).edit(
                content=text, allowed_mentions=AllowedMentions.none()
            )
        except discord.NotFound:
            logger.warning("Discord message {} in {} is gone; edit skipped", message_id, chat_id)
        except discord.DiscordException as exc:
            raise _failure("edit", exc) from exc

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        channel = await self._messageable(chat_id)
        try:
            await channel.get_partial_message(int(message_id)).delete()
        except discord.NotFound:
            logger.debug("Discord message {} in {} already gone", message_id, chat_id)
        except discord.DiscordException as exc:
            raise _failure("delete", exc) from exc

    def _build(self) -> discord.Client:
        intents = Intents.default()
        intents.message_content = True
        intents.guilds = True
        return discord.Client(intents=intents)

    def _register(self, client: discord.Client) -> None:
        @client.event
        async def on_ready() -> None:
            await self._on_ready()

        @client.event
        async def on_message(message: Message) -> None:
            await self._on_message(message)

        @client.event
        async def on_raw_message_edit(payload: RawMessageUpdateEvent) -> None:
            await self._on_raw_message_edit(payload)

        @client.event
        async def on_raw_message_delete(payload: RawMessageDeleteEvent) -> None:
            await self._on_raw_message_delete(payload)

        @client.event
        async def on_raw_bulk_message_delete(payload: RawBulkMessageDeleteEvent) -> None:
            await self._on_raw_bulk_message_delete(payload)

    async def start(self) -> None:
        """Connect the gateway client in the background."""
        if self._client is None:
            self._client = self._build()
        self._register(self._client)
        self._inbound = True
        self._client_task = asyncio.create_task(self._client.start(self._token))

    async def stop_inbound(self) -> None:
        """Drop gateway events from now on; the HTTP session stays open for relays."""
        self._inbound = False

    async def stop(self) -> None:
        """Close the gateway connection and the HTTP session."""
        self._inbound = False
        if self._client:
            await self._client.close()
        if self._client_task:
            self._client_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._client_task
        self._client_task = None
        logger.info("Discord bot stopped")
