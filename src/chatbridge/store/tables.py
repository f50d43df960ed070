"""SQLAlchemy tables backing SqlStore."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chatbridge.constants import parse_direction, parse_platform
from chatbridge.models import Channel, ChangeRecord, Message, MessageMapping, User, utcnow


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    platform: Mapped[str] = mapped_column(String(16), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    username: Mapped[str] = mapped_column(String(256))
    avatar_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @classmethod
    def from_user(cls, user: User) -> UserRow:
        return cls(platform=user.platform, id=user.id, username=user.username, avatar_ref=user.avatar_ref)

    def to_user(self) -> User:
        return User(
            id=self.id,
            platform=parse_platform(self.platform),
            username=self.username,
            avatar_ref=self.avatar_ref,
        )


class ChannelRow(Base):
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    telegram_chat_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    discord_chat_id: Mapped[str | None] = mapped_column(String(64), unique=True, nullable=True)
    direction: Mapped[str] = mapped_column(String(16), default="two-way")

    def to_channel(self) -> Channel:
        return Channel(
            id=self.id,
            telegram_chat_id=self.telegram_chat_id,
            discord_chat_id=self.discord_chat_id,
            direction=parse_direction(self.direction),
        )


class MessageRow(Base):
    __tablename__ = "messages"

    channel_id: Mapped[str] = mapped_column(String(64), ForeignKey("channels.id"), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    author_id: Mapped[str] = mapped_column(String(64))
    author_platform: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @classmethod
    def from_message(cls, message: Message) -> MessageRow:
        return cls(
            channel_id=message.channel_id,
            id=message.id,
            author_id=message.author_id,
            author_platform=message.author_platform,
            content=message.content,
            created_at=message.created_at,
            modified_at=message.modified_at,
            deleted_at=message.deleted_at,
        )

    def to_message(self) -> Message:
        return Message(
            id=self.id,
            channel_id=self.channel_id,
            author_id=self.author_id,
            author_platform=parse_platform(self.author_platform),
            content=self.content,
            created_at=_aware(self.created_at) or utcnow(),
            modified_at=_aware(self.modified_at),
            deleted_at=_aware(self.deleted_at),
        )


class MappingRow(Base):
    __tablename__ = "message_mappings"
    __table_args__ = (
        UniqueConstraint("channel_id", "telegram_message_id", name="uq_mapping_telegram"),
        UniqueConstraint("channel_id", "discord_message_id", name="uq_mapping_discord"),
    )

    pk: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_id: Mapped[str] = mapped_column(String(64), index=True)
    telegram_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discord_message_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_mapping(self) -> MessageMapping:
        return MessageMapping(
            channel_id=self.channel_id,
            telegram_message_id=self.telegram_message_id,
            discord_message_id=self.discord_message_id,
        )


class ChangeRow(Base):
    __tablename__ = "message_changes"
    __table_args__ = (Index("ix_message_changes_status_seq", "status", "seq"),)

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    op: Mapped[str] = mapped_column(String(16))
    table_name: Mapped[str] = mapped_column(String(64), default="messages")
    new: Mapped[dict[str, Any]] = mapped_column(JSON)
    old: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def to_change(self) -> ChangeRecord:
        return ChangeRecord(
            seq=self.seq,
            op=self.op,
            table=self.table_name,
            new=dict(self.new or {}),
            old=dict(self.old) if self.old is not None else None,
            attempts=self.attempts,
            available_at=_aware(self.available_at) or utcnow(),
            status=self.status,
            last_error=self.last_error,
        )
