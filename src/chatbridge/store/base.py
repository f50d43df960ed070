"""Store port: point lookups and upserts over the canonical records.

Implementations write a change row for every message insert/update in the
same transaction as the message itself; that outbox is the change feed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from chatbridge.constants import Platform
from chatbridge.models import Channel, ChangeRecord, Message, MessageMapping, User

CHANGE_PENDING = "pending"
CHANGE_DELIVERED = "delivered"
CHANGE_FAILED = "failed"


class Store(Protocol):
    """Persistent store. Every method may raise TransientStoreFailure."""

    async def connect(self) -> None:
        """Open connections / create schema."""
        ...

    async def close(self) -> None:
        """Release connections."""
        ...

    # Users

    async def get_user(self, platform: Platform, user_id: str) -> User | None: ...

    async def insert_user(self, user: User) -> None: ...

    async def update_user(self, user: User) -> None: ...

    # Channels (administered from config, read by the engine)

    async def upsert_channel(self, channel: Channel) -> None: ...

    async def get_channel(self, channel_id: str) -> Channel | None: ...

    async def find_channel(self, platform: Platform, chat_id: str) -> Channel | None: ...

    async def list_channels(self) -> list[Channel]: ...

    # Messages

    async def insert_message(self, message: Message) -> bool:
        """Insert a canonical message; False if (channel_id, id) already exists."""
        ...

    async def get_message(self, channel_id: str, message_id: str) -> Message | None: ...

    async def update_message_content(
        self, channel_id: str, message_id: str, content: str, modified_at: datetime
    ) -> Message | None:
        """Set new content. Returns the updated row, or None when the message
        is unknown, deleted, or the content is unchanged."""
        ...

    async def soft_delete_message(
        self, channel_id: str, message_id: str, deleted_at: datetime
    ) -> Message | None:
        """Set deleted_at once. Returns the updated row, or None when the
        message is unknown or already deleted."""
        ...

    # Mappings

    async def get_mapping(
        self, channel_id: str, platform: Platform, message_id: str
    ) -> MessageMapping | None: ...

    async def upsert_mapping(self, mapping: MessageMapping) -> MessageMapping:
        """Merge into the row holding either known id, or insert.

        Concurrent or repeated upserts of the same ids converge to one row.
        """
        ...

    # Change feed

    async def fetch_changes(self, limit: int) -> list[ChangeRecord]:
        """Pending changes in sequence order, including not-yet-available ones."""
        ...

    async def ack_change(self, seq: int) -> None: ...

    async def retry_change(self, seq: int, error: str, available_at: datetime) -> None:
        """Record a failed attempt and reschedule."""
        ...

    async def fail_change(self, seq: int, error: str) -> None:
        """Give up on a change (dead letter)."""
        ...
