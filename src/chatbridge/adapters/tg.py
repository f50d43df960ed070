"""Telegram adapter: long-polling bot, native events to bus, outbound client."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from loguru import logger
from telegram import Message, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from chatbridge.adapters.base import AdapterBase
from chatbridge.constants import TELEGRAM
from chatbridge.errors import DestinationSendFailure
from chatbridge.events import message_edit_in, message_in

if TYPE_CHECKING:
    from chatbridge.gateway.bus import Bus

# BadRequest texts that mean the desired end state already holds
_NOT_MODIFIED = "message is not modified"
_GONE = ("message to delete not found", "message to edit not found")


def _author(message: Message) -> tuple[str, str, bool] | None:
    """(author id, display name, is_bot) for a message; channel posts use the sender chat."""
    user = message.from_user
    if user is not None:
        return str(user.id), user.full_name or user.username or str(user.id), bool(user.is_bot)
    chat = message.sender_chat
    if chat is not None:
        return str(chat.id), chat.title or chat.username or str(chat.id), False
    return None


def _failure(action: str, exc: TelegramError) -> DestinationSendFailure:
    return DestinationSendFailure(
        f"telegram {action} failed: {exc}",
        code="telegram_error",
        details={"platform": TELEGRAM, "action": action},
        original_error=exc,
    )


class TelegramAdapter(AdapterBase):
    """Telegram side of the bridge.

    Inbound text messages and edits become MessageIn / MessageEditIn on the
    bus. The Bot API never reports deletions, so nothing produces
    MessageDeleteIn here.
    """

    def __init__(
        self,
        bus: Bus,
        token: str,
        *,
        application: Application | None = None,
        on_identity: Callable[[str, str], None] | None = None,
    ) -> None:
        self._bus = bus
        self._token = token
        self._app = application
        self._on_identity = on_identity
        self._self_id: str | None = None
        self._inbound = True

    @property
    def name(self) -> str:
        return TELEGRAM

    @property
    def self_id(self) -> str | None:
        """Bot account id, known once started."""
        return self._self_id

    def _publish(self, evt: object) -> None:
        if self._inbound:
            self._bus.publish(TELEGRAM, evt)

    def _register(self, app: Application) -> None:
        app.add_handler(MessageHandler(filters.TEXT & ~filters.UpdateType.EDITED, self._on_message))
        app.add_handler(MessageHandler(filters.TEXT & filters.UpdateType.EDITED, self._on_edit))

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """New text message or channel post -> MessageIn."""
        message = update.effective_message
        if message is None or not message.text:
            return
        author = _author(message)
        if author is None:
            return
        author_id, display, is_bot = author
        if author_id == self._self_id:
            return
        _, evt = message_in(
            origin=TELEGRAM,
            chat_id=str(message.chat_id),
            message_id=str(message.message_id),
            author_id=author_id,
            author_display=display,
            content=message.text,
            timestamp=message.date,
            is_bot=is_bot,
            raw={"update_id": update.update_id},
        )
        self._publish(evt)

    async def _on_edit(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Edited text message or channel post -> MessageEditIn."""
        message = update.effective_message
        if message is None or message.text is None:
            return
        author = _author(message)
        author_id, _, is_bot = author if author else ("", "", False)
        _, evt = message_edit_in(
            origin=TELEGRAM,
            chat_id=str(message.chat_id),
            message_id=str(message.message_id),
            content=message.text,
            timestamp=message.edit_date,
            author_id=author_id,
            is_bot=is_bot,
            raw={"update_id": update.update_id},
        )
        self._publish(evt)

    def _bot(self) -> Any:
        if self._app is None:
            raise DestinationSendFailure("telegram adapter is not running", code="not_running")
        return self._app.bot

    async def send_message(self, chat_id: str, text: str) -> str:
        try:
            sent = await self._bot().send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.HTML)
        except TelegramError as exc:
            raise _failure("send", exc) from exc
        return str(sent.message_id)

    async def edit_message(self, chat_id: str, message_id: str, text: str) -> None:
        try:
            await self._bot().edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=int(message_id),
                parse_mode=ParseMode.HTML,
            )
        except BadRequest as exc:
            reason = str(exc).lower()
            if _NOT_MODIFIED in reason:
                return
            if any(gone in reason for gone in _GONE):
                logger.warning("Telegram message {} in {} is gone; edit skipped", message_id, chat_id)
                return
            raise _failure("edit", exc) from exc
        except TelegramError as exc:
            raise _failure("edit", exc) from exc

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        try:
            await self._bot().delete_message(chat_id=chat_id, message_id=int(message_id))
        except BadRequest as exc:
            if any(gone in str(exc).lower() for gone in _GONE):
                logger.debug("Telegram message {} in {} already gone", message_id, chat_id)
                return
            raise _failure("delete", exc) from exc
        except TelegramError as exc:
            raise _failure("delete", exc) from exc

    async def fetch_channel(self, chat_id: str) -> Any:
        try:
            return await self._bot().get_chat(chat_id)
        except TelegramError as exc:
            raise _failure("fetch_channel", exc) from exc

    async def start(self) -> None:
        """Initialize the bot, register handlers and start long polling."""
        if self._app is None:
            self._app = Application.builder().token(self._token).build()
        self._register(self._app)
        await self._app.initialize()
        self._self_id = str(self._app.bot.id)
        if self._on_identity:
            self._on_identity(TELEGRAM, self._self_id)
        self._inbound = True
        await self._app.start()
        if self._app.updater is not None:
            await self._app.updater.start_polling()
        logger.info("Telegram bot started as {}", self._app.bot.username)

    async def stop_inbound(self) -> None:
        """Stop long polling. The bot keeps sending until stop()."""
        self._inbound = False
        app = self._app
        if app is not None and app.updater is not None and app.updater.running:
            await app.updater.stop()

    async def stop(self) -> None:
        """Stop polling and shut the application down."""
        await self.stop_inbound()
        app = self._app
        if app is None:
            return
        if app.running:
            await app.stop()
        await app.shutdown()
        logger.info("Telegram bot stopped")
