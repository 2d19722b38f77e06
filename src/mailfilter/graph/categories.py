"""Outlook master category list management.

The three classification labels are Outlook categories. They work on a
message without being in the master list, but then show without a color,
so they are created up front.
"""

from typing import TYPE_CHECKING, Any

from mailfilter.config_schema import LabelsConfig
from mailfilter.core.logging import get_logger

if TYPE_CHECKING:
    from mailfilter.graph.client import GraphClient

logger = get_logger(__name__)

IMPORTANT_COLOR = "preset0"  # Red
REVIEW_COLOR = "preset3"  # Yellow
JUNK_COLOR = "preset14"  # Steel


class CategoryManager:
    def __init__(self, client: "GraphClient") -> None:
        self._client = client

    def get_categories(self) -> list[dict[str, Any]]:
        response = self._client.get("/me/outlook/masterCategories")
        return response.get("value", [])

    def create_category(self, name: str, color: str) -> dict[str, Any]:
        """Raises GraphAPIError if creation fails (e.g. duplicate name)."""
        response = self._client.post(
            "/me/outlook/masterCategories",
            json={"displayName": name, "color": color},
        )
        logger.info("category_created", name=name, color=color)
        return response

    def ensure_labels(self, labels: LabelsConfig) -> list[str]:
        """Create whichever classification categories are missing.

        Returns:
            Names of the categories that were created
        """
        wanted = {
            labels.important: IMPORTANT_COLOR,
            labels.review: REVIEW_COLOR,
            labels.junk: JUNK_COLOR,
        }
        existing = {c.get("displayName") for c in self.get_categories()}
        created = []
        for name, color in wanted.items():
            if name not in existing:
                self.create_category(name, color)
                created.append(name)
        logger.info("classification_labels_ready", created=created)
        return created
