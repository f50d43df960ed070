"""In-process store for tests and local runs. Same semantics as SqlStore."""

from __future__ import annotations

import copy
from datetime import datetime

from chatbridge.constants import PLATFORMS, Platform
from chatbridge.models import Channel, ChangeRecord, Message, MessageMapping, User, utcnow
from chatbridge.store.base import CHANGE_DELIVERED, CHANGE_FAILED, CHANGE_PENDING


class MemoryStore:
    """Dict-backed store. Returns copies so callers cannot mutate stored rows."""

    def __init__(self) -> None:
        self._users: dict[tuple[str, str], User] = {}
        self._channels: dict[str, Channel] = {}
        self._messages: dict[tuple[str, str], Message] = {}
        self._mappings: list[MessageMapping] = []
        self._changes: dict[int, ChangeRecord] = {}
        self._seq = 0

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # Users

    async def get_user(self, platform: Platform, user_id: str) -> User | None:
        user = self._users.get((platform, user_id))
        return copy.copy(user) if user else None

    async def insert_user(self, user: User) -> None:
        self._users[(user.platform, user.id)] = copy.copy(user)

    async def update_user(self, user: User) -> None:
        self._users[(user.platform, user.id)] = copy.copy(user)

    # Channels

    async def upsert_channel(self, channel: Channel) -> None:
        self._channels[channel.id] = copy.copy(channel)

    async def get_channel(self, channel_id: str) -> Channel | None:
        channel = self._channels.get(channel_id)
        return copy.copy(channel) if channel else None

    async def find_channel(self, platform: Platform, chat_id: str) -> Channel | None:
        for channel in self._channels.values():
            if channel.chat_id(platform) == chat_id:
                return copy.copy(channel)
        return None

    async def list_channels(self) -> list[Channel]:
        return [copy.copy(c) for c in sorted(self._channels.values(), key=lambda c: c.id)]

    # Messages

    def _emit(self, op: str, new: Message, old: Message | None) -> None:
        self._seq += 1
        self._changes[self._seq] = ChangeRecord(
            seq=self._seq,
            op=op,
            table="messages",
            new=new.to_row(),
            old=old.to_row() if old else None,
        )

    async def insert_message(self, message: Message) -> bool:
        key = message.key()
        if key in self._messages:
            return False
        self._messages[key] = copy.copy(message)
        self._emit("insert", message, None)
        return True

    async def get_message(self, channel_id: str, message_id: str) -> Message | None:
        message = self._messages.get((channel_id, message_id))
        return copy.copy(message) if message else None

    async def update_message_content(
        self, channel_id: str, message_id: str, content: str, modified_at: datetime
    ) -> Message | None:
        old = self._messages.get((channel_id, message_id))
        if old is None or old.is_deleted or old.content == content:
            return None
        new = old.with_content(content, modified_at)
        self._messages[new.key()] = new
        self._emit("update", new, old)
        return copy.copy(new)

    async def soft_delete_message(
        self, channel_id: str, message_id: str, deleted_at: datetime
    ) -> Message | None:
        old = self._messages.get((channel_id, message_id))
        if old is None or old.is_deleted:
            return None
        new = old.with_deleted(deleted_at)
        self._messages[new.key()] = new
        self._emit("update", new, old)
        return copy.copy(new)

    # Mappings

    def _find_mapping(self, mapping: MessageMapping) -> MessageMapping | None:
        for existing in self._mappings:
            if existing.channel_id != mapping.channel_id:
                continue
            for platform in PLATFORMS:
                known = mapping.get(platform)
                if known is not None and existing.get(platform) == known:
                    return existing
        return None

    async def get_mapping(
        self, channel_id: str, platform: Platform, message_id: str
    ) -> MessageMapping | None:
        found = self._find_mapping(MessageMapping.for_pair(channel_id, platform, message_id))
        return copy.copy(found) if found else None

    async def upsert_mapping(self, mapping: MessageMapping) -> MessageMapping:
        existing = self._find_mapping(mapping)
        if existing is None:
            existing = copy.copy(mapping)
            self._mappings.append(existing)
        else:
            existing.merge(mapping)
        return copy.copy(existing)

    # Change feed

    async def fetch_changes(self, limit: int) -> list[ChangeRecord]:
        pending = [c for c in self._changes.values() if c.status == CHANGE_PENDING]
        pending.sort(key=lambda c: c.seq)
        return [copy.deepcopy(c) for c in pending[:limit]]

    async def ack_change(self, seq: int) -> None:
        change = self._changes.get(seq)
        if change:
            change.status = CHANGE_DELIVERED
            change.attempts += 1

    async def retry_change(self, seq: int, error: str, available_at: datetime) -> None:
        change = self._changes.get(seq)
        if change:
            change.attempts += 1
            change.last_error = error
            change.available_at = available_at

    async def fail_change(self, seq: int, error: str) -> None:
        change = self._changes.get(seq)
        if change:
            change.status = CHANGE_FAILED
            change.attempts += 1
            change.last_error = error

    # Inspection helpers

    def changes(self) -> list[ChangeRecord]:
        """All change rows in sequence order (any status)."""
        return [copy.deepcopy(self._changes[s]) for s in sorted(self._changes)]

    def mappings(self) -> list[MessageMapping]:
        return [copy.copy(m) for m in self._mappings]

    def messages(self) -> list[Message]:
        return [copy.copy(m) for m in self._messages.values()]

    def requeue_all(self) -> None:
        """Mark every change pending again (simulates a full feed replay)."""
        now = utcnow()
        for change in self._changes.values():
            change.status = CHANGE_PENDING
            change.available_at = now
