"""Change feed: pending outbox rows -> lifecycle events -> relay.

Delivery is at-least-once. A change is acknowledged only after its handler
returns; a handler error reschedules it with backoff until max_attempts,
after which it is marked failed. Changes of one message run in sequence
order, and a change waiting for its retry holds back the later changes of
the same message only.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from loguru import logger

from chatbridge.errors import BridgeError, MalformedEvent, TransientStoreFailure
from chatbridge.events import LifecycleEvent, MessageCreated, MessageDeleted, MessageEdited
from chatbridge.gateway.tasks import TaskPool
from chatbridge.models import ChangeRecord, Message, utcnow
from chatbridge.store.base import Store

Handler = Callable[[LifecycleEvent], Awaitable[None]]


def _row(raw: Any, field: str) -> Message:
    try:
        return Message.from_row(raw)
    except (KeyError, ValueError, TypeError) as exc:
        raise MalformedEvent(f"Bad '{field}' row: {exc}", code="bad_row", original_error=exc) from exc


def parse_change(raw: Any) -> LifecycleEvent:
    """Turn a raw {op, table, new, old} change into a tagged lifecycle event.

    An update whose new row has deleted_at set while the old row did not is
    a deletion; every other update is a content edit.
    """
    if not isinstance(raw, dict):
        raise MalformedEvent("Change is not a mapping", code="bad_change")
    table = raw.get("table")
    if table != "messages":
        raise MalformedEvent(f"Unexpected table {table!r}", code="bad_table")
    new_raw = raw.get("new")
    if not isinstance(new_raw, dict) or not new_raw:
        raise MalformedEvent("Change without 'new' row", code="missing_new")
    new = _row(new_raw, "new")

    op = str(raw.get("op") or "").lower()
    if op == "insert":
        return MessageCreated(message=new)
    if op == "update":
        old_raw = raw.get("old")
        old = _row(old_raw, "old") if isinstance(old_raw, dict) and old_raw else None
        if new.deleted_at is not None and (old is None or old.deleted_at is None):
            return MessageDeleted(message=new, previous=old)
        return MessageEdited(message=new, previous=old)
    raise MalformedEvent(f"Unexpected op {op!r}", code="bad_op")


class ChangeFeed:
    """Polls the store outbox and feeds the relay."""

    def __init__(
        self,
        store: Store,
        handler: Handler,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        max_attempts: int = 5,
        backoff: float = 2.0,
        backoff_max: float = 60.0,
        pool: TaskPool | None = None,
    ) -> None:
        self._store = store
        self._handler = handler
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._max_attempts = max(1, max_attempts)
        self._backoff = backoff
        self._backoff_max = backoff_max
        self._pool = pool or TaskPool("feed")
        self._lanes: dict[tuple[str, str], asyncio.Task[Any]] = {}
        self._inflight: set[int] = set()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def pool(self) -> TaskPool:
        return self._pool

    def start(self) -> None:
        """Start polling in the background."""
        if self._task is None:
            self._stopping.clear()
            self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        logger.info("Feed: polling every {}s", self._poll_interval)
        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except TransientStoreFailure as exc:
                logger.warning("Feed: store unavailable: {}", exc)
            except Exception as exc:
                logger.exception("Feed: poll failed: {}", exc)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval)

    async def stop(self, timeout: float) -> None:
        """Stop polling, then let in-flight changes finish (or cancel them)."""
        self._stopping.set()
        if self._task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        await self._pool.close(timeout)

    async def drain(self) -> None:
        """Wait until every dispatched change has been handled."""
        await self._pool.join()

    async def poll_once(self) -> int:
        """Dispatch the currently available pending changes. Returns how many."""
        if self._pool.closed:
            return 0
        changes = await self._store.fetch_changes(self._batch_size)
        now = utcnow()
        blocked: set[tuple[str, str]] = set()
        dispatched = 0
        for change in changes:
            if change.seq in self._inflight:
                continue
            key = change.message_key() or ("", f"#{change.seq}")
            if key in blocked:
                continue
            if change.available_at > now:
                blocked.add(key)
                continue
            self._dispatch(key, change)
            dispatched += 1
        return dispatched

    def _dispatch(self, key: tuple[str, str], change: ChangeRecord) -> None:
        previous = self._lanes.get(key)
        task = self._pool.spawn(self._process(change, previous), label=f"change #{change.seq}")
        if task is None:
            return
        self._inflight.add(change.seq)
        self._lanes[key] = task

        def _release(t: asyncio.Task[Any], key: tuple[str, str] = key, seq: int = change.seq) -> None:
            self._inflight.discard(seq)
            if self._lanes.get(key) is t:
                del self._lanes[key]

        task.add_done_callback(_release)

    async def _process(self, change: ChangeRecord, previous: asyncio.Task[Any] | None) -> bool:
        """Handle one change. Returns True once it is settled (delivered or
        failed), False when it is left pending for a later poll."""
        if previous is not None:
            if not previous.done():
                await asyncio.wait([previous])
            if previous.cancelled() or previous.result() is not True:
                # An earlier change of this message was deferred; keep order
                logger.debug("Feed: change #{} waits for an earlier change of its message", change.seq)
                return False
        try:
            evt = parse_change(change.payload())
        except MalformedEvent as exc:
            logger.warning("Feed: change #{} is malformed, dropping: {}", change.seq, exc)
            await self._settle(self._store.fail_change(change.seq, str(exc)), change)
            return True

        try:
            await self._handler(evt)
        except BridgeError as exc:
            return await self._reschedule(change, exc)
        except Exception as exc:
            logger.exception("Feed: change #{} handler crashed: {}", change.seq, exc)
            return await self._reschedule(change, exc)
        await self._settle(self._store.ack_change(change.seq), change)
        return True

    async def _reschedule(self, change: ChangeRecord, exc: BaseException) -> bool:
        attempts = change.attempts + 1
        if attempts >= self._max_attempts:
            logger.error("Feed: change #{} failed {} times, giving up: {}", change.seq, attempts, exc)
            await self._settle(self._store.fail_change(change.seq, str(exc)), change)
            return True
        delay = min(self._backoff * (2 ** (attempts - 1)), self._backoff_max)
        logger.info("Feed: change #{} attempt {} failed, retry in {}s: {}", change.seq, attempts, delay, exc)
        await self._settle(
            self._store.retry_change(change.seq, str(exc), utcnow() + timedelta(seconds=delay)),
            change,
        )
        return False

    async def _settle(self, call: Awaitable[None], change: ChangeRecord) -> None:
        try:
            await call
        except TransientStoreFailure as exc:
            # Stays pending; redelivery is safe because handlers are idempotent
            logger.warning("Feed: could not record outcome of change #{}: {}", change.seq, exc)
