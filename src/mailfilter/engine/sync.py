"""Resolve which messages are new since the last observed sync point.

Full sync (no cursor, or the cursor expired): the most recent N inbox
messages are candidates, and a fresh sync token is taken after they are
retrieved so nothing delivered in between is skipped.

Incremental sync: every "message added" change since the cursor is a
candidate, in event order, duplicates included. The cursor advances even
when nothing changed.
"""

from dataclasses import dataclass
from enum import StrEnum

from mailfilter.core.errors import SyncExpiredError
from mailfilter.core.logging import get_logger
from mailfilter.engine.models import MailService

logger = get_logger(__name__)

DEFAULT_FULL_SYNC_SIZE = 20


class SyncMode(StrEnum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Candidates to process and the cursor to commit once they are handled.

    Attributes:
        candidates: Message ids in processing order
        cursor: New sync cursor
        mode: How the candidates were obtained
        expired: True if an incremental sync fell back to a full sync
    """

    candidates: tuple[str, ...]
    cursor: str
    mode: SyncMode
    expired: bool = False


class SyncResolver:
    def __init__(self, mailbox: MailService, full_sync_size: int = DEFAULT_FULL_SYNC_SIZE):
        self.mailbox = mailbox
        self.full_sync_size = full_sync_size

    async def resolve(self, cursor: str | None) -> SyncResult:
        """Work out candidates and the next cursor from the current one.

        Errors other than cursor expiry propagate; the caller's cursor is
        untouched in that case.
        """
        if cursor is None:
            return await self._full_sync()

        try:
            changes = await self.mailbox.changes_since(cursor)
        except SyncExpiredError as e:
            logger.warning("sync_token_expired", error=str(e), action="full_sync")
            return await self._full_sync(expired=True)

        logger.info(
            "incremental_sync_resolved",
            candidates=len(changes.added_ids),
            cursor_advanced=changes.next_token != cursor,
        )
        return SyncResult(
            candidates=tuple(changes.added_ids),
            cursor=changes.next_token,
            mode=SyncMode.INCREMENTAL,
        )

    async def _full_sync(self, expired: bool = False) -> SyncResult:
        messages = await self.mailbox.fetch_recent_inbox(self.full_sync_size)
        token = await self.mailbox.current_sync_token()
        logger.info("full_sync_resolved", candidates=len(messages), after_expiry=expired)
        return SyncResult(
            candidates=tuple(m.id for m in messages),
            cursor=token,
            mode=SyncMode.FULL,
            expired=expired,
        )
