"""Test change parsing and the change feed's delivery rules."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatbridge.constants import TELEGRAM
from chatbridge.errors import DestinationSendFailure, MalformedEvent
from chatbridge.events import MessageCreated, MessageDeleted, MessageEdited
from chatbridge.gateway.feed import ChangeFeed, parse_change
from chatbridge.models import Channel, Message
from chatbridge.store import CHANGE_DELIVERED, CHANGE_FAILED, CHANGE_PENDING, MemoryStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(message_id: str = "m1", content: str = "hello", **kwargs) -> Message:
    return Message(
        id=message_id,
        channel_id="C",
        author_id="u1",
        author_platform=TELEGRAM,
        content=content,
        created_at=T0,
        **kwargs,
    )


class TestParseChange:
    """Raw change rows -> tagged lifecycle events."""

    def test_insert_is_created(self):
        # Act
        evt = parse_change({"op": "insert", "table": "messages", "new": _message().to_row()})

        # Assert
        assert isinstance(evt, MessageCreated)
        assert evt.message == _message()

    def test_content_update_is_edit(self):
        # Arrange
        old = _message()
        new = _message(content="hello world", modified_at=T0 + timedelta(minutes=1))

        # Act
        evt = parse_change({"op": "update", "table": "messages", "new": new.to_row(), "old": old.to_row()})

        # Assert
        assert isinstance(evt, MessageEdited)
        assert evt.previous.content == "hello"
        assert evt.message.content == "hello world"

    def test_deleted_at_transition_is_delete(self):
        # Arrange
        old = _message()
        new = _message(deleted_at=T0 + timedelta(minutes=5))

        # Act
        evt = parse_change({"op": "update", "table": "messages", "new": new.to_row(), "old": old.to_row()})

        # Assert
        assert isinstance(evt, MessageDeleted)
        assert evt.message.deleted_at == T0 + timedelta(minutes=5)

    def test_update_of_already_deleted_row_is_edit(self):
        # Arrange
        deleted = T0 + timedelta(minutes=5)
        old = _message(deleted_at=deleted)
        new = _message(content="changed", deleted_at=deleted)

        # Act
        evt = parse_change({"op": "UPDATE", "table": "messages", "new": new.to_row(), "old": old.to_row()})

        # Assert
        assert isinstance(evt, MessageEdited)

    def test_update_without_old_row_uses_new_deleted_at(self):
        # Arrange
        new = _message(deleted_at=T0)

        # Act
        evt = parse_change({"op": "update", "table": "messages", "new": new.to_row()})

        # Assert
        assert isinstance(evt, MessageDeleted)
        assert evt.previous is None

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "insert",
            {"op": "insert", "table": "users", "new": {"id": "1"}},
            {"op": "insert", "table": "messages"},
            {"op": "insert", "table": "messages", "new": {}},
            {"op": "insert", "table": "messages", "new": {"id": "m1"}},
            {"op": "delete", "table": "messages", "new": _message().to_row()},
            {"op": "insert", "table": "messages", "new": {**_message().to_row(), "author_platform": "slack"}},
            {"op": "insert", "table": "messages", "new": {**_message().to_row(), "created_at": "yesterday"}},
        ],
    )
    def test_malformed_changes_raise(self, raw):
        with pytest.raises(MalformedEvent):
            parse_change(raw)


@pytest.fixture
async def store():
    s = MemoryStore()
    await s.upsert_channel(Channel(id="C", telegram_chat_id="100", discord_chat_id="200"))
    return s


async def _pump(feed: ChangeFeed, rounds: int = 10) -> None:
    for _ in range(rounds):
        dispatched = await feed.poll_once()
        await feed.drain()
        if not dispatched:
            return


class TestChangeFeed:
    """Ack, retry, dead-letter and per-message ordering."""

    @pytest.mark.asyncio
    async def test_success_acks(self, store):
        # Arrange
        handler = AsyncMock()
        feed = ChangeFeed(store, handler)
        await store.insert_message(_message())

        # Act
        await _pump(feed)

        # Assert
        handler.assert_awaited_once()
        assert isinstance(handler.await_args.args[0], MessageCreated)
        [change] = store.changes()
        assert change.status == CHANGE_DELIVERED

    @pytest.mark.asyncio
    async def test_failure_is_retried_with_backoff(self, store):
        # Arrange
        handler = AsyncMock(side_effect=DestinationSendFailure("down"))
        feed = ChangeFeed(store, handler, max_attempts=5, backoff=30.0, backoff_max=60.0)
        await store.insert_message(_message())

        # Act
        await _pump(feed)

        # Assert: one attempt, then parked until the backoff expires
        handler.assert_awaited_once()
        [change] = store.changes()
        assert change.status == CHANGE_PENDING
        assert change.attempts == 1
        assert change.last_error == "down"
        assert change.available_at > datetime.now(timezone.utc) + timedelta(seconds=20)

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, store):
        # Arrange
        handler = AsyncMock(side_effect=DestinationSendFailure("down"))
        feed = ChangeFeed(store, handler, max_attempts=10, backoff=10.0, backoff_max=15.0)
        await store.insert_message(_message())
        [change] = store.changes()
        store._changes[change.seq].attempts = 4

        # Act
        await _pump(feed)

        # Assert
        [change] = store.changes()
        assert change.available_at < datetime.now(timezone.utc) + timedelta(seconds=16)

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, store):
        # Arrange
        handler = AsyncMock(side_effect=DestinationSendFailure("down"))
        feed = ChangeFeed(store, handler, max_attempts=3, backoff=0.0, backoff_max=0.0)
        await store.insert_message(_message())

        # Act
        await _pump(feed)

        # Assert
        assert handler.await_count == 3
        [change] = store.changes()
        assert change.status == CHANGE_FAILED
        assert change.attempts == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_retried(self, store):
        # Arrange
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        feed = ChangeFeed(store, handler, backoff=0.0, backoff_max=0.0)
        await store.insert_message(_message())

        # Act
        await _pump(feed)

        # Assert
        assert handler.await_count == 2
        assert store.changes()[0].status == CHANGE_DELIVERED

    @pytest.mark.asyncio
    async def test_malformed_change_fails_immediately(self, store):
        # Arrange
        handler = AsyncMock()
        feed = ChangeFeed(store, handler)
        await store.insert_message(_message())
        [change] = store.changes()
        store._changes[change.seq].table = "elsewhere"

        # Act
        await _pump(feed)

        # Assert
        handler.assert_not_awaited()
        assert store.changes()[0].status == CHANGE_FAILED

    @pytest.mark.asyncio
    async def test_changes_of_one_message_run_in_order(self, store):
        # Arrange
        order: list[str] = []
        release = asyncio.Event()

        async def handler(evt):
            if isinstance(evt, MessageCreated):
                await release.wait()
            order.append(type(evt).__name__)

        feed = ChangeFeed(store, handler)
        await store.insert_message(_message())
        await store.update_message_content("C", "m1", "edited", T0)
        await store.soft_delete_message("C", "m1", T0)

        # Act
        assert await feed.poll_once() == 3
        await asyncio.sleep(0)
        release.set()
        await feed.drain()

        # Assert
        assert order == ["MessageCreated", "MessageEdited", "MessageDeleted"]

    @pytest.mark.asyncio
    async def test_different_messages_do_not_block_each_other(self, store):
        # Arrange
        done: list[str] = []
        stuck = asyncio.Event()

        async def handler(evt):
            if evt.message.id == "m1":
                await stuck.wait()
            done.append(evt.message.id)

        feed = ChangeFeed(store, handler)
        await store.insert_message(_message("m1"))
        await store.insert_message(_message("m2"))

        # Act
        await feed.poll_once()
        for _ in range(5):
            await asyncio.sleep(0)

        # Assert
        assert done == ["m2"]
        stuck.set()
        await feed.drain()
        assert done == ["m2", "m1"]

    @pytest.mark.asyncio
    async def test_waiting_retry_blocks_only_its_message(self, store):
        # Arrange
        calls: list[tuple[str, str]] = []

        async def handler(evt):
            calls.append((evt.message.id, type(evt).__name__))
            if evt.message.id == "m1" and isinstance(evt, MessageCreated):
                raise DestinationSendFailure("down")

        feed = ChangeFeed(store, handler, backoff=60.0, backoff_max=60.0)
        await store.insert_message(_message("m1"))
        await store.update_message_content("C", "m1", "edited", T0)
        await store.insert_message(_message("m2"))

        # Act
        await _pump(feed)

        # Assert: the edit of m1 stays queued behind its parked create
        assert ("m1", "MessageEdited") not in calls
        assert ("m2", "MessageCreated") in calls
        statuses = {c.seq: c.status for c in store.changes()}
        assert statuses == {1: CHANGE_PENDING, 2: CHANGE_PENDING, 3: CHANGE_DELIVERED}

    @pytest.mark.asyncio
    async def test_in_flight_change_is_not_dispatched_twice(self, store):
        # Arrange
        release = asyncio.Event()
        seen: list[object] = []

        async def handler(evt):
            seen.append(evt)
            await release.wait()

        feed = ChangeFeed(store, handler)
        await store.insert_message(_message())

        # Act
        first = await feed.poll_once()
        second = await feed.poll_once()
        release.set()
        await feed.drain()

        # Assert
        assert (first, second) == (1, 0)
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        # Arrange
        handler = AsyncMock()
        feed = ChangeFeed(store, handler, poll_interval=0.01)
        await store.insert_message(_message())

        # Act
        feed.start()
        for _ in range(100):
            if store.changes()[0].status == CHANGE_DELIVERED:
                break
            await asyncio.sleep(0.01)
        await feed.stop(timeout=1.0)

        # Assert
        handler.assert_awaited_once()
        assert feed.pool.closed
        assert await feed.poll_once() == 0
