"""Data types and collaborator interfaces shared by the engine.

The watcher only depends on the two Protocols below, so tests substitute
in-memory fakes for the Graph mailbox and the Claude classifier.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

# Label marking a message that is still in the inbox. Mailbox adapters
# synthesize it for services without a real inbox label.
INBOX_LABEL = "INBOX"


class Category(StrEnum):
    IMPORTANT = "IMPORTANT"
    REVIEW = "REVIEW"
    JUNK = "JUNK"


@dataclass(frozen=True, slots=True)
class MessageRecord:
    """Snapshot of one message, fetched on demand for a single processing step."""

    id: str
    thread_id: str
    labels: frozenset[str]
    sender: str
    subject: str
    date: str
    snippet: str
    body: str | None = None

    @property
    def in_inbox(self) -> bool:
        return INBOX_LABEL in self.labels


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    category: Category
    confidence: float
    reason: str


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Changes reported since a sync token.

    added_ids keeps event order and may contain duplicates.
    """

    next_token: str
    added_ids: tuple[str, ...]


class MailService(Protocol):
    """Mailbox operations the engine needs.

    changes_since() raises SyncExpiredError when the token is no longer
    resolvable.
    """

    async def authenticated(self) -> bool: ...

    async def current_sync_token(self) -> str: ...

    async def changes_since(self, token: str) -> ChangeSet: ...

    async def fetch_message(self, message_id: str) -> MessageRecord: ...

    async def fetch_recent_inbox(self, count: int) -> list[MessageRecord]: ...

    async def add_remove_labels(
        self, message_id: str, add: Sequence[str], remove: Sequence[str]
    ) -> None: ...

    async def delete_message(self, message_id: str) -> None: ...


class ClassifierService(Protocol):
    """Turns a message into a category. Must not raise."""

    async def classify(self, message: MessageRecord) -> ClassificationResult: ...
