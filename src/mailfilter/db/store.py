"""Watcher state persistence on aiosqlite.

The processed-id ledger and the sync cursor are always written together in
one transaction, so the file never holds a cursor that is ahead of (or
behind) the ids recorded with it.

Usage:
    store = StateStore("data/mailfilter.db")
    await store.initialize()
    state = await store.load()
    await store.save(["id1", "id2"], cursor="https://graph.microsoft.com/...deltatoken=...")
"""

import json
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from mailfilter.core.errors import PersistenceError
from mailfilter.core.logging import get_correlation_id, get_logger
from mailfilter.db.models import init_database

logger = get_logger(__name__)

CURSOR_KEY = "cursor"
SAVED_AT_KEY = "saved_at"


@dataclass
class PersistedState:
    ids: list[str] = field(default_factory=list)
    cursor: str | None = None
    saved_at: datetime | None = None


@dataclass
class ActionLogEntry:
    id: int
    timestamp: str
    message_id: str
    category: str
    confidence: float | None
    reason: str | None
    action: dict[str, Any]
    poll_cycle_id: str | None


class StateStore:
    """Durable home of the sync cursor, processed-id ledger and action log.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Safe to call more than once."""
        if not self._initialized:
            await init_database(self.db_path)
            self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA synchronous = NORMAL")
            db.row_factory = aiosqlite.Row
            yield db

    async def load(self) -> PersistedState:
        """Read the persisted ledger (oldest first) and cursor.

        Raises:
            PersistenceError: If the database cannot be read
        """
        await self.initialize()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT message_id FROM processed_messages ORDER BY position"
                )
                ids = [row["message_id"] for row in await cursor.fetchall()]

                cursor = await db.execute(
                    "SELECT key, value FROM sync_state WHERE key IN (?, ?)",
                    (CURSOR_KEY, SAVED_AT_KEY),
                )
                values = {row["key"]: row["value"] for row in await cursor.fetchall()}
        except aiosqlite.Error as e:
            logger.error("state_load_failed", error=str(e))
            raise PersistenceError(f"Failed to load watcher state from {self.db_path}: {e}") from e

        saved_at = values.get(SAVED_AT_KEY)
        return PersistedState(
            ids=ids,
            cursor=values.get(CURSOR_KEY),
            saved_at=datetime.fromisoformat(saved_at) if saved_at else None,
        )

    async def save(self, ids: Sequence[str], cursor: str | None) -> datetime:
        """Replace the ledger and cursor in a single transaction.

        Returns:
            The save timestamp that was written

        Raises:
            PersistenceError: If the write fails (nothing is committed)
        """
        await self.initialize()
        saved_at = datetime.now(UTC)
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await db.execute("DELETE FROM processed_messages")
                    await db.executemany(
                        "INSERT INTO processed_messages (position, message_id) VALUES (?, ?)",
                        list(enumerate(ids)),
                    )
                    await db.executemany(
                        """
                        INSERT INTO sync_state (key, value, updated_at)
                        VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = excluded.updated_at
                        """,
                        [
                            (CURSOR_KEY, cursor, saved_at.isoformat()),
                            (SAVED_AT_KEY, saved_at.isoformat(), saved_at.isoformat()),
                        ],
                    )
                except aiosqlite.Error:
                    await db.rollback()
                    raise
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("state_save_failed", error=str(e), ids=len(ids))
            raise PersistenceError(f"Failed to save watcher state to {self.db_path}: {e}") from e

        logger.debug("state_saved", ids=len(ids), has_cursor=cursor is not None)
        return saved_at

    async def clear(self) -> None:
        """Forget the ledger and cursor (logout). The action log is kept."""
        await self.initialize()
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM processed_messages")
                await db.execute(
                    "DELETE FROM sync_state WHERE key IN (?, ?)", (CURSOR_KEY, SAVED_AT_KEY)
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to clear watcher state: {e}") from e
        logger.info("state_cleared")

    async def log_action(
        self,
        message_id: str,
        category: str,
        confidence: float,
        reason: str,
        action: dict[str, Any],
    ) -> int:
        """Append an audit entry for an applied classification. Returns its row id."""
        await self.initialize()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        message_id, category, confidence, reason, action_json, poll_cycle_id
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message_id,
                        category,
                        confidence,
                        reason,
                        json.dumps(action),
                        get_correlation_id(),
                    ),
                )
                await db.commit()
                return cursor.lastrowid or 0
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to write action log: {e}") from e

    async def recent_actions(self, limit: int = 50) -> list[ActionLogEntry]:
        await self.initialize()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM action_log ORDER BY id DESC LIMIT ?", (limit,)
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to read action log: {e}") from e

        return [
            ActionLogEntry(
                id=row["id"],
                timestamp=row["timestamp"],
                message_id=row["message_id"],
                category=row["category"],
                confidence=row["confidence"],
                reason=row["reason"],
                action=json.loads(row["action_json"]) if row["action_json"] else {},
                poll_cycle_id=row["poll_cycle_id"],
            )
            for row in rows
        ]
