"""Identity reconciliation: keep one User row per platform account current."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from chatbridge.constants import Platform
from chatbridge.errors import ReconciliationFailure, TransientStoreFailure
from chatbridge.models import User
from chatbridge.store.base import Store


@dataclass
class NativeAuthor:
    """Author descriptor as reported by a platform event."""

    id: str
    platform: Platform
    username: str
    avatar_ref: str | None = None


class IdentityReconciler:
    """Reconciles platform authors into User rows.

    Writes only when the account is new or its username/avatar drifted, so
    repeated messages from the same unchanged account cost one read each.
    """

    def __init__(self, store: Store) -> None:
        self._store = store

    async def reconcile(self, author: NativeAuthor) -> User:
        """Return the stored User for `author`, inserting or updating as needed."""
        try:
            existing = await self._store.get_user(author.platform, author.id)
            if existing is None:
                user = User(
                    id=author.id,
                    platform=author.platform,
                    username=author.username,
                    avatar_ref=author.avatar_ref,
                )
                await self._store.insert_user(user)
                logger.debug("Identity: new {} user {} ({})", author.platform, author.id, author.username)
                return user
            if not existing.differs_from(author.username, author.avatar_ref):
                return existing
            existing.username = author.username
            existing.avatar_ref = author.avatar_ref
            await self._store.update_user(existing)
            logger.debug("Identity: updated {} user {} ({})", author.platform, author.id, author.username)
            return existing
        except TransientStoreFailure as exc:
            raise ReconciliationFailure(
                f"Could not reconcile {author.platform} user {author.id}",
                code="reconcile_failed",
                details={"platform": author.platform, "user_id": author.id},
                original_error=exc,
            ) from exc
