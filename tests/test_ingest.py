"""Test ingestion of native platform events into canonical rows."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatbridge.constants import DISCORD, TELEGRAM
from chatbridge.errors import MalformedEvent, ReconciliationFailure, TransientStoreFailure
from chatbridge.events import message_delete_in, message_edit_in, message_in
from chatbridge.gateway import Bus, ChannelResolver, IngestionPipeline
from chatbridge.identity import IdentityReconciler
from chatbridge.models import Channel, User
from chatbridge.store import MemoryStore

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def store():
    s = MemoryStore()
    await s.upsert_channel(Channel(id="C", telegram_chat_id="100", discord_chat_id="200"))
    return s


@pytest.fixture
def pipeline(store):
    return IngestionPipeline(
        store,
        ChannelResolver(store),
        IdentityReconciler(store),
        relay_identities=[(DISCORD, "relay-bot")],
    )


def _msg(origin=TELEGRAM, chat_id="100", message_id="m1", author_id="u1", content="hello", **kwargs):
    _, evt = message_in(origin, chat_id, message_id, author_id, "Alice", content, timestamp=T0, **kwargs)
    return evt


class TestIngest:
    @pytest.mark.asyncio
    async def test_persists_message_and_author(self, store, pipeline):
        # Act
        message = await pipeline.ingest(_msg(avatar_ref="a.png"))

        # Assert
        assert message is not None
        assert message.channel_id == "C"
        assert message.origin == TELEGRAM
        assert await store.get_message("C", "m1") == message
        assert await store.get_user(TELEGRAM, "u1") == User("u1", TELEGRAM, "Alice", "a.png")
        [change] = store.changes()
        assert change.op == "insert"

    @pytest.mark.asyncio
    async def test_untracked_chat_writes_nothing(self, store, pipeline):
        # Act
        result = await pipeline.ingest(_msg(chat_id="999"))

        # Assert
        assert result is None
        assert store.messages() == []
        assert store.changes() == []
        assert await store.get_user(TELEGRAM, "u1") is None

    @pytest.mark.asyncio
    async def test_relay_authors_are_ignored(self, store, pipeline):
        # Act
        by_flag = await pipeline.ingest(_msg(origin=DISCORD, chat_id="200", is_bot=True))
        by_identity = await pipeline.ingest(_msg(origin=DISCORD, chat_id="200", author_id="relay-bot"))

        # Assert
        assert by_flag is None
        assert by_identity is None
        assert store.messages() == []

    @pytest.mark.asyncio
    async def test_added_relay_identity(self, store, pipeline):
        pipeline.add_relay_identity(TELEGRAM, "u1")

        assert await pipeline.ingest(_msg()) is None

    @pytest.mark.asyncio
    async def test_duplicate_is_dropped(self, store, pipeline):
        assert await pipeline.ingest(_msg()) is not None
        assert await pipeline.ingest(_msg()) is None
        assert len(store.changes()) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "evt",
        [
            _msg(origin="slack"),
            _msg(chat_id=""),
            _msg(message_id=""),
            _msg(author_id=""),
        ],
    )
    async def test_malformed_events_raise(self, pipeline, evt):
        with pytest.raises(MalformedEvent):
            await pipeline.ingest(evt)


class TestIngestEditDelete:
    @pytest.mark.asyncio
    async def test_edit_updates_row(self, store, pipeline):
        # Arrange
        await pipeline.ingest(_msg())
        _, edit = message_edit_in(TELEGRAM, "100", "m1", "hello world", timestamp=T0 + timedelta(minutes=1))

        # Act
        updated = await pipeline.ingest_edit(edit)

        # Assert
        assert updated.content == "hello world"
        assert [c.op for c in store.changes()] == ["insert", "update"]

    @pytest.mark.asyncio
    async def test_edit_of_unknown_or_unchanged_message(self, store, pipeline):
        # Arrange
        await pipeline.ingest(_msg())
        _, same = message_edit_in(TELEGRAM, "100", "m1", "hello")
        _, unknown = message_edit_in(TELEGRAM, "100", "nope", "x")

        # Act / Assert
        assert await pipeline.ingest_edit(same) is None
        assert await pipeline.ingest_edit(unknown) is None
        assert len(store.changes()) == 1

    @pytest.mark.asyncio
    async def test_relay_edit_is_ignored(self, store, pipeline):
        await pipeline.ingest(_msg(origin=DISCORD, chat_id="200", message_id="d1"))
        _, edit = message_edit_in(DISCORD, "200", "d1", "changed", author_id="relay-bot")

        assert await pipeline.ingest_edit(edit) is None

    @pytest.mark.asyncio
    async def test_delete_soft_deletes_once(self, store, pipeline):
        # Arrange
        await pipeline.ingest(_msg(origin=DISCORD, chat_id="200", message_id="d1"))
        _, delete = message_delete_in(DISCORD, "200", "d1", timestamp=T0)

        # Act
        first = await pipeline.ingest_delete(delete)
        second = await pipeline.ingest_delete(delete)

        # Assert
        assert first.deleted_at == T0
        assert second is None
        assert (await store.get_message("C", "d1")).is_deleted

    @pytest.mark.asyncio
    async def test_delete_in_untracked_chat(self, store, pipeline):
        _, delete = message_delete_in(DISCORD, "999", "d1")

        assert await pipeline.ingest_delete(delete) is None


class TestHandle:
    """Errors are logged and the event dropped; nothing escapes handle()."""

    @pytest.mark.asyncio
    async def test_malformed_event_is_dropped(self, pipeline):
        await pipeline.handle(object())
        await pipeline.handle(_msg(origin="slack"))

    @pytest.mark.asyncio
    async def test_reconciliation_failure_writes_no_message(self, store):
        # Arrange
        reconciler = AsyncMock(spec=IdentityReconciler)
        reconciler.reconcile.side_effect = ReconciliationFailure("no user")
        pipeline = IngestionPipeline(store, ChannelResolver(store), reconciler)

        # Act
        await pipeline.handle(_msg())

        # Assert
        assert store.messages() == []
        assert store.changes() == []

    @pytest.mark.asyncio
    async def test_store_failure_is_dropped(self, store):
        # Arrange
        broken = AsyncMock(wraps=store)
        broken.insert_message.side_effect = TransientStoreFailure("db down")
        pipeline = IngestionPipeline(broken, ChannelResolver(store), IdentityReconciler(store))

        # Act
        await pipeline.handle(_msg())

        # Assert
        assert store.messages() == []

    @pytest.mark.asyncio
    async def test_bus_events_run_in_pool(self, store, pipeline):
        # Arrange
        bus = Bus()
        bus.register(pipeline)

        # Act
        bus.publish(TELEGRAM, _msg())
        bus.publish(TELEGRAM, _msg(message_id="m2"))
        bus.publish(TELEGRAM, object())
        await pipeline.pool.join()

        # Assert
        assert sorted(m.id for m in store.messages()) == ["m1", "m2"]
