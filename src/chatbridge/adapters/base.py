"""Adapter interfaces: platform event source + outbound platform client."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Any, Protocol, TypeVar

from chatbridge.errors import DestinationSendFailure

T = TypeVar("T")


class PlatformClient(Protocol):
    """Outbound operations on one platform. Failures raise DestinationSendFailure."""

    async def send_message(self, chat_id: str, text: str) -> str:
        """Send text; return the native id of the new message."""
        ...

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> None: ...

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        """Delete; a message that is already gone counts as deleted."""
        ...

    async def fetch_channel(self, chat_id: str) -> Any:
        """Platform chat object for chat_id."""
        ...


class AdapterBase(ABC):
    """Interface for platform adapters. Publish native events, start/stop."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter identifier ('telegram' or 'discord')."""
        ...

    def accept_event(self, source: str, evt: object) -> bool:
        """Adapters consume nothing from the bus by default."""
        return False

    def push_event(self, source: str, evt: object) -> None:
        pass

    @abstractmethod
    async def start(self) -> None:
        """Start the adapter (connect, register handlers)."""
        ...

    async def stop_inbound(self) -> None:
        """Stop publishing native events. Outbound calls keep working until stop()."""

    @abstractmethod
    async def stop(self) -> None:
        """Close the platform client (disconnect, cleanup)."""
        ...


async def platform_call(platform: str, action: str, call: Awaitable[T], *, timeout: float) -> T:
    """Await a platform call with a deadline; every failure becomes DestinationSendFailure."""
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except DestinationSendFailure:
        raise
    except asyncio.TimeoutError as exc:
        raise DestinationSendFailure(
            f"{platform} {action} timed out after {timeout}s",
            code="timeout",
            details={"platform": platform, "action": action},
            original_error=exc,
        ) from exc
    except Exception as exc:
        raise DestinationSendFailure(
            f"{platform} {action} failed: {exc}",
            code="platform_error",
            details={"platform": platform, "action": action},
            original_error=exc,
        ) from exc
