"""Native event bus: adapters publish, ingestion and the channel resolver consume."""

from __future__ import annotations

from collections import Counter

from loguru import logger

from chatbridge.events import EventTarget

__all__ = ["Bus", "EventTarget"]


class Bus:
    """Fans native events out to every target that accepts them.

    A failing target is logged and skipped; the others still receive the
    event. Once closed, nothing is delivered: events a platform still
    reports during shutdown are counted as dropped.
    """

    def __init__(self) -> None:
        self._targets: list[EventTarget] = []
        self._closed = False
        self.delivered: Counter[str] = Counter()
        self.dropped: Counter[str] = Counter()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def targets(self) -> list[EventTarget]:
        """Registered targets."""
        return list(self._targets)

    def register(self, target: EventTarget) -> None:
        if target not in self._targets:
            self._targets.append(target)

    def unregister(self, target: EventTarget) -> None:
        if target in self._targets:
            self._targets.remove(target)

    def close(self) -> None:
        """Stop delivering. Later publishes are dropped."""
        self._closed = True

    def publish(self, source: str, evt: object) -> int:
        """Deliver evt to the accepting targets; return how many took it."""
        kind = type(evt).__name__
        if self._closed:
            self.dropped[source] += 1
            logger.debug("Bus closed; dropped {} from {}", kind, source)
            return 0
        taken = 0
        for target in list(self._targets):
            try:
                if target.accept_event(source, evt):
                    target.push_event(source, evt)
                    taken += 1
            except Exception as exc:
                logger.exception("Failed to pass {} to {}: {}", kind, target, exc)
        if taken:
            self.delivered[source] += 1
        else:
            self.dropped[source] += 1
            logger.debug("No consumer for {} from {}", kind, source)
        return taken
