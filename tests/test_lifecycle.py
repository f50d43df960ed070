"""Test edit and delete propagation to relayed copies."""

from datetime import datetime, timezone

import pytest

from chatbridge.constants import DISCORD, TELEGRAM
from chatbridge.errors import DestinationSendFailure
from chatbridge.events import MessageDeleted, MessageEdited
from chatbridge.gateway.lifecycle import LifecyclePropagator, author_name
from chatbridge.models import Channel, Message, MessageMapping, User
from chatbridge.store import MemoryStore
from tests.mocks import FakePlatformClient

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _message(origin=TELEGRAM, message_id="m1", content="hello", **kwargs) -> Message:
    return Message(
        id=message_id,
        channel_id="C",
        author_id="u1",
        author_platform=origin,
        content=content,
        created_at=T0,
        **kwargs,
    )


@pytest.fixture
async def store():
    s = MemoryStore()
    await s.upsert_channel(Channel(id="C", telegram_chat_id="100", discord_chat_id="200"))
    await s.insert_user(User(id="u1", platform=TELEGRAM, username="Alice"))
    await s.insert_user(User(id="u1", platform=DISCORD, username="Dee"))
    return s


@pytest.fixture
def clients():
    return {TELEGRAM: FakePlatformClient(TELEGRAM, id_prefix="a"), DISCORD: FakePlatformClient(DISCORD, id_prefix="b")}


class TestPropagateEdit:
    @pytest.mark.asyncio
    async def test_edits_counterpart_only(self, store, clients):
        # Arrange
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1", discord_message_id="b1"))
        evt = MessageEdited(message=_message(content="hello world"), previous=_message())

        # Act
        await LifecyclePropagator(store, clients).propagate_edit(evt)

        # Assert
        assert clients[DISCORD].edits == [("200", "b1", "📱 ↔️ **Alice**\nhello world")]
        assert clients[TELEGRAM].edits == []

    @pytest.mark.asyncio
    async def test_discord_origin_edits_telegram_copy(self, store, clients):
        # Arrange
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="a7", discord_message_id="d1"))
        evt = MessageEdited(message=_message(origin=DISCORD, message_id="d1", content="x < y"))

        # Act
        await LifecyclePropagator(store, clients).propagate_edit(evt)

        # Assert
        assert clients[TELEGRAM].edits == [("100", "a7", "🔷 ↔️ <b>Dee</b>\nx &lt; y")]

    @pytest.mark.asyncio
    async def test_no_mapping_is_noop(self, store, clients):
        evt = MessageEdited(message=_message(content="new"), previous=_message())

        await LifecyclePropagator(store, clients).propagate_edit(evt)

        assert clients[DISCORD].edits == []

    @pytest.mark.asyncio
    async def test_mapping_without_counterpart_is_noop(self, store, clients):
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1"))

        await LifecyclePropagator(store, clients).propagate_edit(MessageEdited(message=_message(content="new")))

        assert clients[DISCORD].edits == []

    @pytest.mark.asyncio
    async def test_unchanged_content_is_noop(self, store, clients):
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1", discord_message_id="b1"))
        evt = MessageEdited(message=_message(), previous=_message())

        await LifecyclePropagator(store, clients).propagate_edit(evt)

        assert clients[DISCORD].edits == []

    @pytest.mark.asyncio
    async def test_edit_failure_propagates(self, store, clients):
        # Arrange
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1", discord_message_id="b1"))
        clients[DISCORD].fail_edits = 1

        # Act / Assert
        with pytest.raises(DestinationSendFailure):
            await LifecyclePropagator(store, clients).propagate_edit(
                MessageEdited(message=_message(content="new"), previous=_message())
            )


class TestPropagateDelete:
    @pytest.mark.asyncio
    async def test_deletes_counterpart_and_keeps_mapping(self, store, clients):
        # Arrange
        mapping = MessageMapping("C", telegram_message_id="m1", discord_message_id="b1")
        await store.upsert_mapping(mapping)
        evt = MessageDeleted(message=_message(deleted_at=T0), previous=_message())
        propagator = LifecyclePropagator(store, clients)

        # Act
        await propagator.propagate_delete(evt)
        await propagator.propagate_delete(evt)

        # Assert
        assert clients[DISCORD].deletes == [("200", "b1"), ("200", "b1")]
        assert clients[TELEGRAM].deletes == []
        assert await store.get_mapping("C", TELEGRAM, "m1") == mapping

    @pytest.mark.asyncio
    async def test_no_mapping_is_noop(self, store, clients):
        await LifecyclePropagator(store, clients).propagate_delete(MessageDeleted(message=_message(deleted_at=T0)))

        assert clients[DISCORD].deletes == []

    @pytest.mark.asyncio
    async def test_missing_client_is_noop(self, store, clients):
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1", discord_message_id="b1"))

        await LifecyclePropagator(store, {TELEGRAM: clients[TELEGRAM]}).propagate_delete(
            MessageDeleted(message=_message(deleted_at=T0))
        )

        assert clients[DISCORD].deletes == []

    @pytest.mark.asyncio
    async def test_delete_failure_propagates(self, store, clients):
        await store.upsert_mapping(MessageMapping("C", telegram_message_id="m1", discord_message_id="b1"))
        clients[DISCORD].fail_deletes = 1

        with pytest.raises(DestinationSendFailure):
            await LifecyclePropagator(store, clients).propagate_delete(MessageDeleted(message=_message(deleted_at=T0)))


class TestAuthorName:
    @pytest.mark.asyncio
    async def test_known_and_unknown(self, store):
        assert await author_name(store, _message()) == "Alice"
        assert await author_name(store, _message(origin=DISCORD)) == "Dee"
        stranger = Message(id="x", channel_id="C", author_id="zz", author_platform=TELEGRAM, content="")
        assert await author_name(store, stranger) == "zz"
