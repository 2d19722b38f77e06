"""SQLite persistence for watcher state and the action audit log."""

from mailfilter.db.store import PersistedState, StateStore

__all__ = ["PersistedState", "StateStore"]
