"""SQLite schema and initialization.

Tables:
- processed_messages: ordered ledger of message ids already acted upon
- sync_state: key-value store for the sync cursor and save timestamp
- action_log: audit trail of classifications and the mailbox actions applied

Usage:
    from mailfilter.db.models import init_database

    await init_database("data/mailfilter.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailfilter.core.errors import PersistenceError
from mailfilter.core.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Insertion order is the position column; lowest positions are evicted first
CREATE TABLE IF NOT EXISTS processed_messages (
    position INTEGER PRIMARY KEY,
    message_id TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS sync_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    message_id TEXT NOT NULL,
    category TEXT NOT NULL,
    confidence REAL,
    reason TEXT,
    action_json TEXT,
    poll_cycle_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_message ON action_log(message_id);
"""


async def init_database(db_path: str | Path) -> None:
    """Create the database file and tables if needed, then restrict permissions to 0600.

    Raises:
        PersistenceError: If the database cannot be created
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
            cursor = await db.execute("PRAGMA journal_mode")
            mode = await cursor.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning("wal_mode_not_enabled", actual=mode[0], db_path=str(db_path))
    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise PersistenceError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the file is not corrupted."
        ) from e

    # Message ids and subjects in the audit log are personal data
    db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    for suffix in ["-wal", "-shm"]:
        side_file = db_path.with_suffix(db_path.suffix + suffix)
        if side_file.exists():
            side_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

    logger.info("database_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)
