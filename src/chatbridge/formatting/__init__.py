"""Message rendering for cross-platform relay."""

from chatbridge.formatting.render import (
    badge,
    format_for_discord,
    format_for_telegram,
    format_message,
    truncate,
)

__all__ = ["badge", "format_for_discord", "format_for_telegram", "format_message", "truncate"]
