"""Pytest fixtures and in-memory collaborators for mailfilter tests.

FakeMailbox and FakeClassifier implement the engine's MailService and
ClassifierService protocols and record every call, so tests can assert on
exactly what the watcher asked of them.
"""

import asyncio
import dataclasses
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Generator

import pytest

from mailfilter.config import reset_config
from mailfilter.config_schema import AppConfig, LabelsConfig, WatcherConfig
from mailfilter.core.errors import AuthenticationError, SyncExpiredError
from mailfilter.db.store import StateStore
from mailfilter.engine.models import (
    INBOX_LABEL,
    Category,
    ChangeSet,
    ClassificationResult,
    MessageRecord,
)


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "auth": {
            "client_id": "test-client-id",
            "tenant_id": "test-tenant-id",
        },
        "watcher": {
            "poll_interval_ms": 60_000,
            "full_sync_size": 20,
        },
        "labels": {
            "important": "AI-Important",
            "review": "AI-Review",
            "junk": "AI-Junk",
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def labels() -> LabelsConfig:
    return LabelsConfig()


@pytest.fixture
def watcher_settings() -> WatcherConfig:
    # Long interval so the timer never fires during a test
    return WatcherConfig(poll_interval_ms=3_600_000)


@pytest.fixture
async def store(data_dir: Path) -> StateStore:
    """Create and initialize a StateStore."""
    s = StateStore(data_dir / "test.db")
    await s.initialize()
    return s


def make_record(
    message_id: str,
    labels: Sequence[str] = (INBOX_LABEL,),
    sender: str = "Alice <alice@example.com>",
    subject: str | None = None,
) -> MessageRecord:
    return MessageRecord(
        id=message_id,
        thread_id=f"thread-{message_id}",
        labels=frozenset(labels),
        sender=sender,
        subject=subject or f"Subject {message_id}",
        date="2026-01-15T10:00:00Z",
        snippet=f"Snippet for {message_id}",
        body=f"Body of {message_id}",
    )


class FakeMailbox:
    """In-memory mailbox with a numbered change history.

    Sync tokens are "t<N>" where N is the number of delivery events already
    seen. Tokens listed in ``expired_tokens`` raise SyncExpiredError.
    """

    def __init__(self) -> None:
        self.messages: dict[str, MessageRecord] = {}
        self.inbox_order: list[str] = []
        self.events: list[str] = []
        self.expired_tokens: set[str] = set()
        self.fail_fetch: set[str] = set()
        self.is_authenticated = True
        self.calls: list[tuple[str, Any]] = []

    def seed(self, *records: MessageRecord) -> None:
        """Place messages in the mailbox without reporting them as changes."""
        for record in records:
            self.messages[record.id] = record
            self.inbox_order.insert(0, record.id)

    def deliver(self, *records: MessageRecord) -> None:
        """New arrivals: stored and reported by changes_since."""
        self.seed(*records)
        self.events.extend(r.id for r in records)

    def calls_for(self, message_id: str) -> list[tuple[str, Any]]:
        matched = []
        for name, arg in self.calls:
            target = arg[0] if isinstance(arg, tuple) else arg
            if target == message_id:
                matched.append((name, arg))
        return matched

    async def authenticated(self) -> bool:
        return self.is_authenticated

    async def current_sync_token(self) -> str:
        self.calls.append(("current_sync_token", None))
        return f"t{len(self.events)}"

    async def changes_since(self, token: str) -> ChangeSet:
        self.calls.append(("changes_since", token))
        if token in self.expired_tokens:
            raise SyncExpiredError(f"Token {token} expired")
        start = int(token.lstrip("t"))
        return ChangeSet(next_token=f"t{len(self.events)}", added_ids=tuple(self.events[start:]))

    async def fetch_message(self, message_id: str) -> MessageRecord:
        self.calls.append(("fetch_message", message_id))
        if not self.is_authenticated:
            raise AuthenticationError("not signed in")
        if message_id in self.fail_fetch or message_id not in self.messages:
            raise LookupError(f"message {message_id} unavailable")
        return self.messages[message_id]

    async def fetch_recent_inbox(self, count: int) -> list[MessageRecord]:
        self.calls.append(("fetch_recent_inbox", count))
        inbox = [self.messages[i] for i in self.inbox_order if self.messages[i].in_inbox]
        return inbox[:count]

    async def add_remove_labels(
        self, message_id: str, add: Sequence[str], remove: Sequence[str]
    ) -> None:
        self.calls.append(("add_remove_labels", (message_id, tuple(add), tuple(remove))))
        record = self.messages[message_id]
        labels = (set(record.labels) | set(add)) - set(remove)
        self.messages[message_id] = dataclasses.replace(record, labels=frozenset(labels))

    async def delete_message(self, message_id: str) -> None:
        self.calls.append(("delete_message", message_id))
        del self.messages[message_id]
        self.inbox_order.remove(message_id)


class FakeClassifier:
    """Returns a preset category per message id (REVIEW otherwise).

    Setting ``gate`` makes classify() wait on it, which holds a poll cycle
    open for overlap tests.
    """

    def __init__(self, categories: dict[str, Category] | None = None) -> None:
        self.categories = categories or {}
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def classify(self, message: MessageRecord) -> ClassificationResult:
        self.calls.append(message.id)
        if self.gate is not None:
            await self.gate.wait()
        category = self.categories.get(message.id, Category.REVIEW)
        return ClassificationResult(category=category, confidence=0.9, reason="test")


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()
