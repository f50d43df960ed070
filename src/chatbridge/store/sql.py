"""SQLAlchemy (asyncio) store: SQLite via aiosqlite or PostgreSQL via asyncpg."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from datetime import datetime

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatbridge.constants import TELEGRAM, Platform
from chatbridge.errors import TransientStoreFailure
from chatbridge.models import Channel, ChangeRecord, Message, MessageMapping, User
from chatbridge.store.base import CHANGE_DELIVERED, CHANGE_FAILED, CHANGE_PENDING
from chatbridge.store.tables import Base, ChangeRow, ChannelRow, MappingRow, MessageRow, UserRow

# Startup only: 5 attempts, exponential backoff 2-30s
CONNECT_RETRY = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type((SQLAlchemyError, OSError)),
    reraise=True,
)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))


class SqlStore:
    """Store on a relational database. Message writes and their change rows
    share one transaction."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self._url = url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @CONNECT_RETRY
    async def _create_schema(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def connect(self) -> None:
        """Create the engine and schema (retried on connection errors)."""
        if _is_memory_sqlite(self._url):
            # One shared connection, or every session sees an empty database
            engine = create_async_engine(self._url, echo=self._echo, poolclass=StaticPool)
        elif self._url.startswith("sqlite"):
            engine = create_async_engine(self._url, echo=self._echo)
        else:
            engine = create_async_engine(self._url, echo=self._echo, pool_pre_ping=True)
        try:
            await self._create_schema(engine)
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            raise TransientStoreFailure(
                f"Could not connect to {engine.url.render_as_string(hide_password=True)}: {exc}",
                code="connect_failed",
                original_error=exc,
            ) from exc
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        logger.info("Store connected: {}", engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None

    @contextlib.asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        """Session in a transaction. IntegrityError passes through for callers
        that treat conflicts as outcomes; other database errors become
        TransientStoreFailure."""
        if self._sessions is None:
            raise TransientStoreFailure("Store not connected", code="not_connected", details={"action": action})
        try:
            async with self._sessions() as session, session.begin():
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise TransientStoreFailure(
                f"{action} failed: {exc}",
                code="store_error",
                details={"action": action},
                original_error=exc,
            ) from exc

    # Users

    async def get_user(self, platform: Platform, user_id: str) -> User | None:
        async with self._transaction("get_user") as session:
            row = await session.get(UserRow, (platform, user_id))
            return row.to_user() if row else None

    async def insert_user(self, user: User) -> None:
        try:
            async with self._transaction("insert_user") as session:
                session.add(UserRow.from_user(user))
        except IntegrityError:
            # First-seen race with another task: the other insert wins, then update
            await self.update_user(user)

    async def update_user(self, user: User) -> None:
        async with self._transaction("update_user") as session:
            await session.execute(
                update(UserRow)
                .where(UserRow.platform == user.platform, UserRow.id == user.id)
                .values(username=user.username, avatar_ref=user.avatar_ref)
            )

    # Channels

    async def upsert_channel(self, channel: Channel) -> None:
        async with self._transaction("upsert_channel") as session:
            row = await session.get(ChannelRow, channel.id)
            if row is None:
                row = ChannelRow(id=channel.id)
                session.add(row)
            row.telegram_chat_id = channel.telegram_chat_id
            row.discord_chat_id = channel.discord_chat_id
            row.direction = channel.direction

    async def get_channel(self, channel_id: str) -> Channel | None:
        async with self._transaction("get_channel") as session:
            row = await session.get(ChannelRow, channel_id)
            return row.to_channel() if row else None

    async def find_channel(self, platform: Platform, chat_id: str) -> Channel | None:
        column = ChannelRow.telegram_chat_id if platform == TELEGRAM else ChannelRow.discord_chat_id
        async with self._transaction("find_channel") as session:
            row = (await session.execute(select(ChannelRow).where(column == chat_id))).scalar_one_or_none()
            return row.to_channel() if row else None

    async def list_channels(self) -> list[Channel]:
        async with self._transaction("list_channels") as session:
            rows = (await session.execute(select(ChannelRow).order_by(ChannelRow.id))).scalars().all()
            return [row.to_channel() for row in rows]

    # Messages

    async def insert_message(self, message: Message) -> bool:
        try:
            async with self._transaction("insert_message") as session:
                session.add(MessageRow.from_message(message))
                await session.flush()
                session.add(ChangeRow(op="insert", table_name="messages", new=message.to_row(), old=None))
        except IntegrityError:
            return False
        return True

    async def get_message(self, channel_id: str, message_id: str) -> Message | None:
        async with self._transaction("get_message") as session:
            row = await session.get(MessageRow, (channel_id, message_id))
            return row.to_message() if row else None

    async def update_message_content(
        self, channel_id: str, message_id: str, content: str, modified_at: datetime
    ) -> Message | None:
        async with self._transaction("update_message_content") as session:
            row = await session.get(MessageRow, (channel_id, message_id), with_for_update=True)
            if row is None or row.deleted_at is not None or row.content == content:
                return None
            old = row.to_message()
            row.content = content
            row.modified_at = modified_at
            new = row.to_message()
            session.add(ChangeRow(op="update", table_name="messages", new=new.to_row(), old=old.to_row()))
            return new

    async def soft_delete_message(
        self, channel_id: str, message_id: str, deleted_at: datetime
    ) -> Message | None:
        async with self._transaction("soft_delete_message") as session:
            row = await session.get(MessageRow, (channel_id, message_id), with_for_update=True)
            if row is None or row.deleted_at is not None:
                return None
            old = row.to_message()
            row.deleted_at = deleted_at
            new = row.to_message()
            session.add(ChangeRow(op="update", table_name="messages", new=new.to_row(), old=old.to_row()))
            return new

    # Mappings

    @staticmethod
    async def _find_mapping_row(session: AsyncSession, mapping: MessageMapping) -> MappingRow | None:
        conditions = []
        if mapping.telegram_message_id is not None:
            conditions.append(MappingRow.telegram_message_id == mapping.telegram_message_id)
        if mapping.discord_message_id is not None:
            conditions.append(MappingRow.discord_message_id == mapping.discord_message_id)
        if not conditions:
            return None
        stmt = (
            select(MappingRow)
            .where(MappingRow.channel_id == mapping.channel_id, or_(*conditions))
            .order_by(MappingRow.pk)
        )
        return (await session.execute(stmt)).scalars().first()

    async def get_mapping(
        self, channel_id: str, platform: Platform, message_id: str
    ) -> MessageMapping | None:
        async with self._transaction("get_mapping") as session:
            row = await self._find_mapping_row(session, MessageMapping.for_pair(channel_id, platform, message_id))
            return row.to_mapping() if row else None

    async def upsert_mapping(self, mapping: MessageMapping) -> MessageMapping:
        # A unique-key conflict means another task inserted the same ids
        # first; the second pass merges into that row.
        for attempt in range(2):
            try:
                async with self._transaction("upsert_mapping") as session:
                    row = await self._find_mapping_row(session, mapping)
                    if row is None:
                        row = MappingRow(
                            channel_id=mapping.channel_id,
                            telegram_message_id=mapping.telegram_message_id,
                            discord_message_id=mapping.discord_message_id,
                        )
                        session.add(row)
                        await session.flush()
                    else:
                        if row.telegram_message_id is None and mapping.telegram_message_id is not None:
                            row.telegram_message_id = mapping.telegram_message_id
                        if row.discord_message_id is None and mapping.discord_message_id is not None:
                            row.discord_message_id = mapping.discord_message_id
                    return row.to_mapping()
            except IntegrityError as exc:
                if attempt:
                    raise TransientStoreFailure(
                        "upsert_mapping conflict did not converge",
                        code="mapping_conflict",
                        details={"channel_id": mapping.channel_id},
                        original_error=exc,
                    ) from exc
                logger.debug("Mapping insert raced in channel {}; merging", mapping.channel_id)
        raise AssertionError("unreachable")

    # Change feed

    async def fetch_changes(self, limit: int) -> list[ChangeRecord]:
        stmt = select(ChangeRow).where(ChangeRow.status == CHANGE_PENDING).order_by(ChangeRow.seq).limit(limit)
        async with self._transaction("fetch_changes") as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row.to_change() for row in rows]

    async def ack_change(self, seq: int) -> None:
        async with self._transaction("ack_change") as session:
            await session.execute(
                update(ChangeRow)
                .where(ChangeRow.seq == seq)
                .values(status=CHANGE_DELIVERED, attempts=ChangeRow.attempts + 1)
            )

    async def retry_change(self, seq: int, error: str, available_at: datetime) -> None:
        async with self._transaction("retry_change") as session:
            await session.execute(
                update(ChangeRow)
                .where(ChangeRow.seq == seq)
                .values(attempts=ChangeRow.attempts + 1, last_error=error, available_at=available_at)
            )

    async def fail_change(self, seq: int, error: str) -> None:
        async with self._transaction("fail_change") as session:
            await session.execute(
                update(ChangeRow)
                .where(ChangeRow.seq == seq)
                .values(status=CHANGE_FAILED, attempts=ChangeRow.attempts + 1, last_error=error)
            )
