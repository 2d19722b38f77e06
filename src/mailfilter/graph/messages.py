"""Message operations on the Microsoft Graph mail API.

Usage:
    messages = MessageManager(GraphClient(auth))

    recent = messages.list_inbox(max_items=20)
    messages.add_categories(message_id, ["AI-Important"])
    messages.move_message(message_id, "archive")
"""

from typing import TYPE_CHECKING, Any

from mailfilter.core.errors import ConflictError
from mailfilter.core.logging import get_logger

if TYPE_CHECKING:
    from mailfilter.graph.client import GraphClient

logger = get_logger(__name__)

MAX_CONFLICT_RETRIES = 3

DEFAULT_MESSAGE_FIELDS = (
    "id,conversationId,subject,from,receivedDateTime,bodyPreview,parentFolderId,categories"
)


class MessageManager:
    """Thin, synchronous wrapper over /me/messages endpoints.

    Attributes:
        client: GraphClient used for every call
    """

    def __init__(self, client: "GraphClient"):
        self.client = client

    def list_inbox(
        self,
        max_items: int,
        select: str | None = None,
    ) -> list[dict[str, Any]]:
        """Most recent inbox messages, newest first."""
        return self.client.paginate(
            "/me/mailFolders/inbox/messages",
            params={
                "$select": select or DEFAULT_MESSAGE_FIELDS,
                "$orderby": "receivedDateTime desc",
            },
            page_size=min(max_items, 50),
            max_items=max_items,
        )

    def get_message(self, message_id: str, select: str | None = None) -> dict[str, Any]:
        """Raises GraphAPIError (404) if the message no longer exists."""
        return self.client.get(
            f"/me/messages/{message_id}",
            params={"$select": select or DEFAULT_MESSAGE_FIELDS},
        )

    def get_mime(self, message_id: str) -> bytes:
        """Raw RFC 822 content of a message."""
        return self.client.get_bytes(f"/me/messages/{message_id}/$value")

    def get_folder_id(self, folder: str) -> str:
        """Resolve a well-known folder name (inbox, archive, ...) to its id."""
        response = self.client.get(f"/me/mailFolders/{folder}", params={"$select": "id"})
        return response["id"]

    def move_message(self, message_id: str, destination: str) -> dict[str, Any]:
        """Move a message. ``destination`` is a folder id or well-known name.

        With immutable ids the message keeps its id after the move.
        """
        response = self.client.post(
            f"/me/messages/{message_id}/move",
            json={"destinationId": destination},
        )
        logger.info(
            "message_moved",
            message_id=message_id[:20] + "...",
            destination=destination[:20],
        )
        return response

    def delete_message(self, message_id: str) -> None:
        """Delete a message; Outlook moves it to Deleted Items."""
        self.client.delete(f"/me/messages/{message_id}")
        logger.info("message_deleted", message_id=message_id[:20] + "...")

    def add_categories(self, message_id: str, categories: list[str]) -> dict[str, Any]:
        """Add categories, keeping existing ones. See _update_categories."""
        return self._update_categories(message_id, add=categories, remove=[])

    def remove_categories(self, message_id: str, categories: list[str]) -> dict[str, Any]:
        return self._update_categories(message_id, add=[], remove=categories)

    def _update_categories(
        self,
        message_id: str,
        add: list[str],
        remove: list[str],
    ) -> dict[str, Any]:
        """Read-modify-write of a message's categories under an ETag.

        If another client changes the message between the read and the
        write, the write fails with 412 and is retried with fresh data.

        Raises:
            ConflictError: After MAX_CONFLICT_RETRIES conflicting attempts
        """
        for attempt in range(MAX_CONFLICT_RETRIES):
            message = self.client.get(
                f"/me/messages/{message_id}",
                params={"$select": "categories"},
            )
            existing = message.get("categories", [])
            etag = message.get("@odata.etag")

            updated = [c for c in existing if c not in remove]
            for category in add:
                if category not in updated:
                    updated.append(category)

            if updated == existing:
                return message

            try:
                response = self.client.patch(
                    f"/me/messages/{message_id}",
                    json={"categories": updated},
                    if_match=etag,
                )
            except ConflictError:
                logger.warning(
                    "category_update_conflict",
                    message_id=message_id[:20] + "...",
                    attempt=attempt + 1,
                    max_retries=MAX_CONFLICT_RETRIES,
                )
                continue

            logger.info(
                "message_categories_updated",
                message_id=message_id[:20] + "...",
                categories=updated,
            )
            return response

        raise ConflictError(
            f"Failed to update categories after {MAX_CONFLICT_RETRIES} attempts: "
            "the message is being modified by another client.",
            resource_id=message_id,
        )
