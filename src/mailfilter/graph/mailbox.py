"""Graph-backed implementation of the engine's MailService interface.

Outlook has no inbox label, so the INBOX marker is synthesized from the
message's parent folder, and removing it moves the message to the review
destination folder. Classification labels are Outlook categories.

The sync token is a Graph delta link on the inbox. The first round is
filtered to messages received from "now" on, so taking a token never pages
through the whole mailbox and later rounds only report newly arrived mail.

All Graph calls are blocking; each one runs in a worker thread so the
event loop stays free while a poll cycle waits on the network.
"""

import asyncio
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from mailfilter.auth.msal_auth import GraphAuth
from mailfilter.config_schema import LabelsConfig
from mailfilter.core.errors import GraphAPIError
from mailfilter.core.logging import get_logger
from mailfilter.engine.models import INBOX_LABEL, ChangeSet, MessageRecord
from mailfilter.graph.categories import CategoryManager
from mailfilter.graph.client import GraphClient
from mailfilter.graph.messages import MessageManager
from mailfilter.mime import extract_body_text

logger = get_logger(__name__)

INBOX_FOLDER = "inbox"
DELTA_MAX_ITEMS = 500


def _format_sender(message: dict[str, Any]) -> str:
    address = (message.get("from") or {}).get("emailAddress") or {}
    name = address.get("name") or ""
    email = address.get("address") or ""
    if name and email and name != email:
        return f"{name} <{email}>"
    return email or name


class GraphMailbox:
    """Async MailService over Microsoft Graph.

    Attributes:
        labels: Category names and the review destination folder
    """

    def __init__(
        self,
        auth: GraphAuth,
        client: GraphClient,
        labels: LabelsConfig | None = None,
    ):
        self.auth = auth
        self.client = client
        self.messages = MessageManager(client)
        self.categories = CategoryManager(client)
        self.labels = labels or LabelsConfig()
        self._inbox_id: str | None = None

    async def authenticated(self) -> bool:
        return await asyncio.to_thread(self.auth.is_authenticated)

    async def account_email(self) -> str:
        return await asyncio.to_thread(self.client.get_user_email)

    async def ensure_categories(self) -> list[str]:
        return await asyncio.to_thread(self.categories.ensure_labels, self.labels)

    def _inbox_folder_id(self) -> str:
        if self._inbox_id is None:
            self._inbox_id = self.messages.get_folder_id(INBOX_FOLDER)
        return self._inbox_id

    def _to_record(self, message: dict[str, Any], inbox_id: str, body: str | None) -> MessageRecord:
        labels = set(message.get("categories") or [])
        if message.get("parentFolderId") == inbox_id:
            labels.add(INBOX_LABEL)
        return MessageRecord(
            id=message["id"],
            thread_id=message.get("conversationId") or "",
            labels=frozenset(labels),
            sender=_format_sender(message),
            subject=message.get("subject") or "(no subject)",
            date=message.get("receivedDateTime") or "",
            snippet=message.get("bodyPreview") or "",
            body=body,
        )

    async def current_sync_token(self) -> str:
        return await asyncio.to_thread(self._current_sync_token)

    def _current_sync_token(self) -> str:
        since = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        _, token = self.client.get_delta_messages(
            INBOX_FOLDER,
            None,
            params={"$select": "id", "$filter": f"receivedDateTime ge {since}"},
            max_items=DELTA_MAX_ITEMS,
        )
        if token is None:
            raise GraphAPIError("Delta query on the inbox returned no sync link")
        return token

    async def changes_since(self, token: str) -> ChangeSet:
        return await asyncio.to_thread(self._changes_since, token)

    def _changes_since(self, token: str) -> ChangeSet:
        entries, next_token = self.client.get_delta_messages(
            INBOX_FOLDER, token, max_items=DELTA_MAX_ITEMS
        )
        added = tuple(e["id"] for e in entries if "@removed" not in e and "id" in e)
        return ChangeSet(next_token=next_token or token, added_ids=added)

    async def fetch_message(self, message_id: str) -> MessageRecord:
        return await asyncio.to_thread(self._fetch_message, message_id)

    def _fetch_message(self, message_id: str) -> MessageRecord:
        message = self.messages.get_message(message_id)
        body = extract_body_text(self.messages.get_mime(message_id))
        return self._to_record(message, self._inbox_folder_id(), body)

    async def fetch_recent_inbox(self, count: int) -> list[MessageRecord]:
        return await asyncio.to_thread(self._fetch_recent_inbox, count)

    def _fetch_recent_inbox(self, count: int) -> list[MessageRecord]:
        inbox_id = self._inbox_folder_id()
        # Bodies are not needed to pick candidates; fetch_message loads them later
        return [self._to_record(m, inbox_id, None) for m in self.messages.list_inbox(count)]

    async def add_remove_labels(
        self, message_id: str, add: Sequence[str], remove: Sequence[str]
    ) -> None:
        await asyncio.to_thread(self._add_remove_labels, message_id, list(add), list(remove))

    def _add_remove_labels(self, message_id: str, add: list[str], remove: list[str]) -> None:
        leave_inbox = INBOX_LABEL in remove
        remove_categories = [label for label in remove if label != INBOX_LABEL]

        if add:
            self.messages.add_categories(message_id, add)
        if remove_categories:
            self.messages.remove_categories(message_id, remove_categories)
        if leave_inbox:
            self.messages.move_message(message_id, self.labels.review_destination)

    async def delete_message(self, message_id: str) -> None:
        await asyncio.to_thread(self.messages.delete_message, message_id)
