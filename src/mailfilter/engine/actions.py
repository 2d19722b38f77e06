"""Map a classification outcome to the mailbox mutation it implies.

| Category  | Add label          | Remove label | Other             |
|-----------|--------------------|--------------|-------------------|
| IMPORTANT | important label    |              | stays in inbox    |
| REVIEW    | review label       | INBOX        | moved out         |
| JUNK      |                    |              | trashed           |
"""

from dataclasses import asdict, dataclass

from mailfilter.config_schema import LabelsConfig
from mailfilter.engine.models import INBOX_LABEL, Category, MailService


@dataclass(frozen=True, slots=True)
class ClassificationAction:
    trash: bool = False
    add_labels: tuple[str, ...] = ()
    remove_labels: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return asdict(self)


def action_for(category: Category, labels: LabelsConfig) -> ClassificationAction:
    """Pure mapping from category to action."""
    match category:
        case Category.IMPORTANT:
            return ClassificationAction(add_labels=(labels.important,))
        case Category.REVIEW:
            return ClassificationAction(add_labels=(labels.review,), remove_labels=(INBOX_LABEL,))
        case Category.JUNK:
            return ClassificationAction(trash=True)
    raise ValueError(f"Unknown category: {category!r}")


async def apply_action(mailbox: MailService, message_id: str, action: ClassificationAction) -> None:
    """Perform the action. Trash never issues label calls."""
    if action.trash:
        await mailbox.delete_message(message_id)
        return
    await mailbox.add_remove_labels(message_id, list(action.add_labels), list(action.remove_labels))
