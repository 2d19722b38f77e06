"""Per-message processing: skip rules, classification, action, bookkeeping.

For each candidate id, in order:
1. Already in the ledger: skip with no mailbox or classifier calls.
2. Fetch the message.
3. No longer in the inbox: mark processed, no classification.
4. Already carries a classification label: mark processed, no classification.
   A message still in the inbox with the review label is a REVIEW whose move
   failed after the label was written; the move is finished first.
5. Classify, apply the mapped action, mark processed, count it.
6. Any failure in 2-5: count an error and leave the id unmarked so the next
   cycle retries it. After ``max_attempts`` consecutive failures the id is
   abandoned (marked processed) so a message that always fails cannot be
   retried forever. At most as many failing ids as the ledger holds are
   tracked; the oldest are forgotten first.
"""

from enum import StrEnum

from mailfilter.config_schema import LabelsConfig
from mailfilter.core.errors import MessageProcessingError, PersistenceError
from mailfilter.core.logging import get_logger
from mailfilter.db.store import StateStore
from mailfilter.engine.actions import action_for, apply_action
from mailfilter.engine.ledger import DedupLedger
from mailfilter.engine.models import Category, ClassifierService, MailService, MessageRecord
from mailfilter.engine.stats import WatcherStats

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class ProcessOutcome(StrEnum):
    SKIPPED_KNOWN = "skipped_known"
    NOT_IN_INBOX = "not_in_inbox"
    ALREADY_LABELED = "already_labeled"
    REVIEW_COMPLETED = "review_completed"
    CLASSIFIED = "classified"
    FAILED = "failed"
    ABANDONED = "abandoned"


class MessageProcessor:
    def __init__(
        self,
        mailbox: MailService,
        classifier: ClassifierService,
        ledger: DedupLedger,
        stats: WatcherStats,
        labels: LabelsConfig,
        store: StateStore | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.mailbox = mailbox
        self.classifier = classifier
        self.ledger = ledger
        self.stats = stats
        self.labels = labels
        self.store = store
        self.max_attempts = max_attempts
        # message id -> consecutive failures, oldest failure first
        self._failures: dict[str, int] = {}

    def failure_count(self, message_id: str) -> int:
        return self._failures.get(message_id, 0)

    def tracked_failures(self) -> int:
        return len(self._failures)

    def forget_failures(self) -> None:
        self._failures.clear()

    async def process(self, message_id: str) -> ProcessOutcome:
        if self.ledger.has(message_id):
            return ProcessOutcome.SKIPPED_KNOWN

        try:
            return await self._process_new(message_id)
        except Exception as e:
            return self._record_failure(
                MessageProcessingError(f"{type(e).__name__}: {e}", message_id=message_id)
            )

    async def _process_new(self, message_id: str) -> ProcessOutcome:
        record = await self.mailbox.fetch_message(message_id)

        if not record.in_inbox:
            self._mark(message_id)
            logger.debug("message_not_in_inbox", message_id=message_id[:20] + "...")
            return ProcessOutcome.NOT_IN_INBOX

        if self.labels.review in record.labels:
            return await self._complete_review(record)

        existing = record.labels.intersection(self.labels.all())
        if existing:
            self._mark(message_id)
            logger.debug(
                "message_already_labeled",
                message_id=message_id[:20] + "...",
                labels=sorted(existing),
            )
            return ProcessOutcome.ALREADY_LABELED

        result = await self.classifier.classify(record)
        action = action_for(result.category, self.labels)
        await apply_action(self.mailbox, message_id, action)

        self._mark(message_id)
        self.stats.record_classified(result.category)
        logger.info(
            "message_classified",
            message_id=message_id[:20] + "...",
            subject=record.subject[:80],
            category=result.category.value,
            confidence=result.confidence,
            reason=result.reason[:200],
            trashed=action.trash,
        )

        if self.store is not None:
            try:
                await self.store.log_action(
                    message_id,
                    result.category.value,
                    result.confidence,
                    result.reason,
                    action.to_dict(),
                )
            except PersistenceError as e:
                # The audit trail is best-effort; the action already happened
                logger.warning("action_log_write_failed", error=str(e))

        return ProcessOutcome.CLASSIFIED

    async def _complete_review(self, record: MessageRecord) -> ProcessOutcome:
        """Finish a REVIEW whose label was written but whose move out of the inbox failed.

        The classification is not repeated; the earlier decision is counted now
        because the failed attempt only counted an error.
        """
        await apply_action(self.mailbox, record.id, action_for(Category.REVIEW, self.labels))
        self._mark(record.id)
        self.stats.record_classified(Category.REVIEW)
        logger.info(
            "review_move_completed",
            message_id=record.id[:20] + "...",
            destination=self.labels.review_destination,
        )
        return ProcessOutcome.REVIEW_COMPLETED

    def _mark(self, message_id: str) -> None:
        self.ledger.add(message_id)
        self._failures.pop(message_id, None)

    def _record_failure(self, error: MessageProcessingError) -> ProcessOutcome:
        message_id = error.message_id
        self.stats.errors += 1
        # Re-inserting keeps the most recently failing ids at the end
        attempts = self._failures.pop(message_id, 0) + 1
        self._failures[message_id] = attempts
        self._trim_failures()

        if attempts >= self.max_attempts:
            self._mark(message_id)
            self.stats.abandoned += 1
            logger.error(
                "message_abandoned",
                message_id=message_id[:20] + "...",
                attempts=attempts,
                error=str(error),
            )
            return ProcessOutcome.ABANDONED

        logger.warning(
            "message_processing_failed",
            message_id=message_id[:20] + "...",
            attempt=attempts,
            max_attempts=self.max_attempts,
            error=str(error),
        )
        return ProcessOutcome.FAILED

    def _trim_failures(self) -> None:
        excess = len(self._failures) - self.ledger.max_size
        if excess <= 0:
            return
        for message_id in list(self._failures)[:excess]:
            del self._failures[message_id]
        logger.debug("failure_counts_trimmed", evicted=excess)
