"""Bridge domain exceptions.

Untracked channels and missing message mappings are not errors: lookups
return None and callers no-op.
"""

from __future__ import annotations


class BridgeError(Exception):
    """Base for bridge domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class BridgeConfigurationError(BridgeError):
    """Config validation or load failure."""


class TransientStoreFailure(BridgeError):
    """Store read/write failed; the event is dropped and left to redelivery."""


class ReconciliationFailure(BridgeError):
    """Author identity could not be resolved; ingestion must not continue."""


class DestinationSendFailure(BridgeError):
    """Send/edit/delete on the destination platform failed."""


class MalformedEvent(BridgeError):
    """Event payload could not be interpreted."""
