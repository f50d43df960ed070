"""Canonical records shared by the store, ingestion and relay."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from chatbridge.constants import (
    DISCORD,
    TELEGRAM,
    Direction,
    Platform,
    other_platform,
    parse_platform,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class User:
    """Canonical identity of one platform account. Key: (platform, id)."""

    id: str
    platform: Platform
    username: str
    avatar_ref: str | None = None

    def differs_from(self, username: str, avatar_ref: str | None) -> bool:
        return self.username != username or self.avatar_ref != avatar_ref


@dataclass
class Channel:
    """Logical conversation bound to at most one native chat per platform."""

    id: str
    telegram_chat_id: str | None = None
    discord_chat_id: str | None = None
    direction: Direction = "two-way"

    def chat_id(self, platform: Platform) -> str | None:
        """Native chat id on the given platform."""
        if platform == TELEGRAM:
            return self.telegram_chat_id
        if platform == DISCORD:
            return self.discord_chat_id
        return None


@dataclass
class Message:
    """Canonical message. `id` is the native id of the originating send."""

    id: str
    channel_id: str
    author_id: str
    author_platform: Platform
    content: str
    created_at: datetime = field(default_factory=utcnow)
    modified_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def origin(self) -> Platform:
        """Platform the message was first sent on (its author's platform)."""
        return self.author_platform

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def key(self) -> tuple[str, str]:
        return (self.channel_id, self.id)

    def to_row(self) -> dict[str, Any]:
        """Serialize to the snake_case row shape carried by the change feed."""
        return {
            "id": self.id,
            "channel_id": self.channel_id,
            "author_id": self.author_id,
            "author_platform": self.author_platform,
            "content": self.content,
            "created_at": _iso(self.created_at),
            "modified_at": _iso(self.modified_at),
            "deleted_at": _iso(self.deleted_at),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Message:
        """Inverse of to_row. Raises KeyError/ValueError on bad rows."""
        created_at = _parse_ts(row.get("created_at"))
        return cls(
            id=str(row["id"]),
            channel_id=str(row["channel_id"]),
            author_id=str(row["author_id"]),
            author_platform=parse_platform(row["author_platform"]),
            content=str(row.get("content") or ""),
            created_at=created_at or utcnow(),
            modified_at=_parse_ts(row.get("modified_at")),
            deleted_at=_parse_ts(row.get("deleted_at")),
        )

    def with_content(self, content: str, modified_at: datetime) -> Message:
        return replace(self, content=content, modified_at=modified_at)

    def with_deleted(self, deleted_at: datetime) -> Message:
        return replace(self, deleted_at=deleted_at)


@dataclass
class MessageMapping:
    """Links the native ids of one logical message on both platforms.

    Either side may be None until the relay completes.
    """

    channel_id: str
    telegram_message_id: str | None = None
    discord_message_id: str | None = None

    @classmethod
    def for_pair(
        cls,
        channel_id: str,
        origin: Platform,
        origin_id: str,
        counterpart_id: str | None = None,
    ) -> MessageMapping:
        """Build a mapping from the origin's id and, optionally, the copy's id."""
        mapping = cls(channel_id=channel_id)
        mapping.set(origin, origin_id)
        if counterpart_id is not None:
            mapping.set(other_platform(origin), counterpart_id)
        return mapping

    def get(self, platform: Platform) -> str | None:
        if platform == TELEGRAM:
            return self.telegram_message_id
        if platform == DISCORD:
            return self.discord_message_id
        return None

    def set(self, platform: Platform, message_id: str) -> None:
        if platform == TELEGRAM:
            self.telegram_message_id = message_id
        elif platform == DISCORD:
            self.discord_message_id = message_id
        else:
            raise ValueError(f"Unknown platform: {platform!r}")

    def counterpart(self, origin: Platform) -> str | None:
        """Native id on the platform opposite `origin`."""
        return self.get(other_platform(origin))

    def merge(self, other: MessageMapping) -> bool:
        """Fill ids missing here from `other`. Returns True if anything changed.

        Known ids are never overwritten, so merging is order-independent for
        retries that carry the same ids.
        """
        changed = False
        if self.telegram_message_id is None and other.telegram_message_id is not None:
            self.telegram_message_id = other.telegram_message_id
            changed = True
        if self.discord_message_id is None and other.discord_message_id is not None:
            self.discord_message_id = other.discord_message_id
            changed = True
        return changed


@dataclass
class ChangeRecord:
    """One row of the change feed outbox."""

    seq: int
    op: str
    table: str
    new: dict[str, Any]
    old: dict[str, Any] | None = None
    attempts: int = 0
    available_at: datetime = field(default_factory=utcnow)
    status: str = "pending"
    last_error: str | None = None

    def payload(self) -> dict[str, Any]:
        """Raw change-feed event shape: {op, table, new, old}."""
        return {"op": self.op, "table": self.table, "new": self.new, "old": self.old}

    def message_key(self) -> tuple[str, str] | None:
        """(channel_id, message_id) of the row this change is about, if readable."""
        row = self.new if isinstance(self.new, dict) else {}
        channel_id, message_id = row.get("channel_id"), row.get("id")
        if channel_id is None or message_id is None:
            return None
        return (str(channel_id), str(message_id))
