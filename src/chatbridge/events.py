"""Event types.

Two families of events exist and never share a consumer:

- native platform events (MessageIn, MessageEditIn, MessageDeleteIn) travel
  from adapters over the bus to ingestion;
- lifecycle events (MessageCreated, MessageEdited, MessageDeleted) are built
  from change-feed rows and handed to the relay.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Union

from chatbridge.models import Message, utcnow


@dataclass
class MessageIn:
    """Native "message created" event from either platform."""

    origin: str  # "telegram" | "discord"
    chat_id: str
    message_id: str
    author_id: str
    author_display: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    avatar_ref: str | None = None
    is_bot: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageEditIn:
    """Native edit of a message on its own platform."""

    origin: str
    chat_id: str
    message_id: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    author_id: str = ""
    is_bot: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageDeleteIn:
    """Native deletion of a message on its own platform."""

    origin: str
    chat_id: str
    message_id: str
    timestamp: datetime = field(default_factory=utcnow)
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConfigReload:
    """Config was reloaded (e.g. SIGHUP)."""

    pass


@dataclass
class MessageCreated:
    """Canonical message row was inserted."""

    message: Message


@dataclass
class MessageEdited:
    """Canonical message content changed."""

    message: Message
    previous: Message | None = None


@dataclass
class MessageDeleted:
    """Canonical message was soft-deleted (deleted_at newly set)."""

    message: Message
    previous: Message | None = None


LifecycleEvent = Union[MessageCreated, MessageEdited, MessageDeleted]


class EventTarget(Protocol):
    """Bus consumer interface: accept_event + push_event."""

    def accept_event(self, source: str, evt: object) -> bool:
        """Return True if this target wants the event."""
        ...

    def push_event(self, source: str, evt: object) -> None:
        """Handle the event (may be async via task)."""
        ...


def event(type_name: str):
    """Decorator to mark a factory as producing an event with a given type."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (type_name, evt)

        wrapper.TYPE = type_name  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event("message_in")
def message_in(
    origin: str,
    chat_id: str,
    message_id: str,
    author_id: str,
    author_display: str,
    content: str,
    *,
    timestamp: datetime | None = None,
    avatar_ref: str | None = None,
    is_bot: bool = False,
    raw: dict[str, Any] | None = None,
) -> MessageIn:
    return MessageIn(
        origin=origin,
        chat_id=chat_id,
        message_id=message_id,
        author_id=author_id,
        author_display=author_display,
        content=content,
        timestamp=timestamp or utcnow(),
        avatar_ref=avatar_ref,
        is_bot=is_bot,
        raw=raw or {},
    )


@event("message_edit_in")
def message_edit_in(
    origin: str,
    chat_id: str,
    message_id: str,
    content: str,
    *,
    timestamp: datetime | None = None,
    author_id: str = "",
    is_bot: bool = False,
    raw: dict[str, Any] | None = None,
) -> MessageEditIn:
    return MessageEditIn(
        origin=origin,
        chat_id=chat_id,
        message_id=message_id,
        content=content,
        timestamp=timestamp or utcnow(),
        author_id=author_id,
        is_bot=is_bot,
        raw=raw or {},
    )


@event("message_delete_in")
def message_delete_in(
    origin: str,
    chat_id: str,
    message_id: str,
    *,
    timestamp: datetime | None = None,
    raw: dict[str, Any] | None = None,
) -> MessageDeleteIn:
    return MessageDeleteIn(
        origin=origin,
        chat_id=chat_id,
        message_id=message_id,
        timestamp=timestamp or utcnow(),
        raw=raw or {},
    )


@event("config_reload")
def config_reload() -> ConfigReload:
    return ConfigReload()
