"""Task pool: one asyncio task per unit of work, drained on shutdown."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Coroutine
from typing import Any

from loguru import logger


class TaskPool:
    """Runs coroutines as independent tasks and tracks them until done.

    A failing task is logged and never affects its siblings. After close()
    no new work is accepted.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, label: str = "") -> asyncio.Task[Any] | None:
        """Schedule `coro`. Returns None (and discards it) once closed."""
        if self._closed:
            logger.debug("{}: closed, dropping {}", self.name, label or coro)
            coro.close()
            return None
        task = asyncio.create_task(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], label: str) -> Any:
        try:
            return await coro
        except asyncio.CancelledError:
            logger.warning("{}: cancelled {}", self.name, label)
            raise
        except Exception as exc:
            logger.exception("{}: task {} failed: {}", self.name, label, exc)
            return None

    async def join(self) -> None:
        """Wait for everything currently scheduled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, timeout: float) -> None:
        """Stop accepting work, let in-flight tasks finish, cancel stragglers."""
        self._closed = True
        if not self._tasks:
            return
        logger.info("{}: waiting for {} in-flight task(s)", self.name, len(self._tasks))
        done, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning("{}: cancelling {} task(s) after {}s", self.name, len(pending), timeout)
            for task in pending:
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*pending, return_exceptions=True)
