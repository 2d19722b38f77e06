"""Bounded, insertion-ordered ledger of processed message ids.

The ledger lives in memory during a cycle and is written to the StateStore
together with the sync cursor. When it grows past ``max_size`` the oldest
ids are evicted first.
"""

from mailfilter.core.logging import get_logger
from mailfilter.db.store import StateStore

logger = get_logger(__name__)

DEFAULT_MAX_PROCESSED_IDS = 10_000


class DedupLedger:
    """Processed-id set plus the sync cursor it was saved with.

    Attributes:
        cursor: Sync token committed alongside the ids (None before first sync)
    """

    def __init__(self, store: StateStore, max_size: int = DEFAULT_MAX_PROCESSED_IDS):
        self.store = store
        self.max_size = max_size
        self.cursor: str | None = None
        # dict preserves insertion order; values are unused
        self._ids: dict[str, None] = {}

    def has(self, message_id: str) -> bool:
        return message_id in self._ids

    def add(self, message_id: str) -> None:
        """Record an id. Re-adding an existing id keeps its original position."""
        self._ids.setdefault(message_id, None)

    def size(self) -> int:
        return len(self._ids)

    def ids(self) -> list[str]:
        """Ids oldest first."""
        return list(self._ids)

    def trim(self) -> int:
        """Evict the oldest ids beyond max_size. Returns how many were evicted."""
        excess = len(self._ids) - self.max_size
        if excess <= 0:
            return 0
        for message_id in list(self._ids)[:excess]:
            del self._ids[message_id]
        logger.debug("ledger_trimmed", evicted=excess, size=len(self._ids))
        return excess

    def clear(self) -> None:
        self._ids.clear()
        self.cursor = None

    async def load(self) -> None:
        """Replace in-memory state with what the store holds."""
        state = await self.store.load()
        self._ids = dict.fromkeys(state.ids)
        self.cursor = state.cursor
        self.trim()
        logger.info(
            "ledger_loaded",
            processed_ids=len(self._ids),
            has_cursor=self.cursor is not None,
            saved_at=state.saved_at.isoformat() if state.saved_at else None,
        )

    async def save(self) -> None:
        """Trim, then persist ids and cursor as one unit.

        Raises:
            PersistenceError: If the store write fails; memory is left as is
        """
        self.trim()
        await self.store.save(self.ids(), self.cursor)
