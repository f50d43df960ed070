"""Render canonical messages for the opposite platform. Pure functions, no I/O."""

from __future__ import annotations

import html

from discord.utils import escape_markdown, escape_mentions

from chatbridge.constants import (
    DISCORD,
    MAX_LENGTH,
    ONE_WAY,
    TELEGRAM,
    TWO_WAY,
    Direction,
    Platform,
    other_platform,
)
from chatbridge.models import Message

PLATFORM_BADGE: dict[Platform, str] = {TELEGRAM: "📱", DISCORD: "🔷"}
DIRECTION_BADGE: dict[Direction, str] = {TWO_WAY: "↔️", ONE_WAY: "➡️"}
ELLIPSIS = "…"


def badge(origin: Platform, direction: Direction) -> str:
    """Origin + direction marker that prefixes every relayed message."""
    return f"{PLATFORM_BADGE[origin]} {DIRECTION_BADGE[direction]}"


def truncate(text: str, limit: int) -> str:
    """Cut text to `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)] + ELLIPSIS


def _truncate_html(header: str, content: str, limit: int) -> str:
    # Truncate the escaped body at an entity boundary so no &amp; is split
    room = limit - len(header)
    escaped = html.escape(content, quote=True)
    if len(escaped) <= room:
        return header + escaped
    cut = escaped[: room - len(ELLIPSIS)]
    amp = cut.rfind("&")
    if amp != -1 and ";" not in cut[amp:]:
        cut = cut[:amp]
    return header + cut + ELLIPSIS


def format_for_telegram(author: str, content: str, origin: Platform, direction: Direction) -> str:
    """HTML parse-mode text: badge, bold author, body. All user text escaped."""
    header = f"{badge(origin, direction)} <b>{html.escape(author, quote=True)}</b>\n"
    return _truncate_html(header, content, MAX_LENGTH[TELEGRAM])


def format_for_discord(author: str, content: str, origin: Platform, direction: Direction) -> str:
    """Markdown text: badge, bold author, body with markdown and mentions neutralized."""
    safe_author = escape_mentions(escape_markdown(author))
    safe_content = escape_mentions(escape_markdown(content))
    return truncate(f"{badge(origin, direction)} **{safe_author}**\n{safe_content}", MAX_LENGTH[DISCORD])


def format_message(message: Message, author: str, origin: Platform, direction: Direction) -> str:
    """Render `message` for the platform opposite `origin`."""
    target = other_platform(origin)
    if target == TELEGRAM:
        return format_for_telegram(author, message.content, origin, direction)
    return format_for_discord(author, message.content, origin, direction)
