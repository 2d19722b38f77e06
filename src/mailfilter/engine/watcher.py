"""Poll scheduler: one watcher instance drives sync, processing and persistence.

A cycle resolves candidates from the sync cursor, processes them strictly
one at a time, advances the in-memory cursor, and, when there were
candidates, saves the ledger and cursor together. Cycles never overlap:
the timer job runs with max_instances=1 and every poll() passes through a
lock, so a poll that arrives mid-cycle is skipped.

Usage:
    watcher = EmailWatcher(mailbox, classifier, store, labels=config.labels,
                           settings=config.watcher)
    await watcher.start()
    ...
    await watcher.stop()
"""

import asyncio
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from mailfilter.config_schema import LabelsConfig, WatcherConfig
from mailfilter.core.errors import AuthenticationError, PersistenceError
from mailfilter.core.logging import get_logger, set_correlation_id
from mailfilter.db.store import StateStore
from mailfilter.engine.ledger import DedupLedger
from mailfilter.engine.models import ClassifierService, MailService
from mailfilter.engine.processor import MessageProcessor, ProcessOutcome
from mailfilter.engine.stats import StatsSnapshot, WatcherStats
from mailfilter.engine.sync import SyncResolver

logger = get_logger(__name__)

POLL_JOB_ID = "mail_poll"


@dataclass
class PollResult:
    """Summary of one poll cycle."""

    cycle_id: str
    mode: str = "skipped"
    skip_reason: str | None = None
    candidates: int = 0
    classified: int = 0
    skipped: int = 0
    failed: int = 0
    abandoned: int = 0
    sync_expired: bool = False
    saved: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class WatcherStatus:
    stats: StatsSnapshot
    processed_count: int

    def to_dict(self) -> dict[str, Any]:
        return {**self.stats.to_dict(), "processed_count": self.processed_count}


class EmailWatcher:
    """Owns the cursor, ledger, stats and timer for one mailbox.

    Attributes:
        mailbox: Mail service collaborator
        classifier: Classifier collaborator (never raises)
        store: Durable state
        stats: Running counters
    """

    def __init__(
        self,
        mailbox: MailService,
        classifier: ClassifierService,
        store: StateStore,
        labels: LabelsConfig | None = None,
        settings: WatcherConfig | None = None,
    ):
        self.settings = settings or WatcherConfig()
        self.labels = labels or LabelsConfig()
        self.mailbox = mailbox
        self.classifier = classifier
        self.store = store
        self.stats = WatcherStats()
        self.ledger = DedupLedger(store, max_size=self.settings.max_processed_ids)
        self.resolver = SyncResolver(mailbox, full_sync_size=self.settings.full_sync_size)
        self.processor = MessageProcessor(
            mailbox=mailbox,
            classifier=classifier,
            ledger=self.ledger,
            stats=self.stats,
            labels=self.labels,
            store=store,
            max_attempts=self.settings.max_message_attempts,
        )
        self._scheduler: AsyncIOScheduler | None = None
        self._cycle_lock = asyncio.Lock()
        self._start_lock = asyncio.Lock()
        self._state_loaded = False

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    async def start(self) -> bool:
        """Load state, run one cycle, then poll every poll_interval_ms.

        Already running: no-op, returns True.

        Raises:
            AuthenticationError: If the mailbox is not authenticated
            PersistenceError: If persisted state cannot be loaded
        """
        async with self._start_lock:
            if self.is_running:
                logger.info("watcher_already_running")
                return True

            if not await self.mailbox.authenticated():
                raise AuthenticationError(
                    "Cannot start the watcher: the mailbox is not authenticated. "
                    "Run 'mailfilter login' first."
                )

            if not self._state_loaded:
                await self._load_state()
            await self.poll()

            interval_s = self.settings.poll_interval_ms / 1000
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                self._scheduled_poll,
                "interval",
                seconds=interval_s,
                id=POLL_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            self.stats.is_running = True
            logger.info(
                "watcher_started",
                poll_interval_ms=self.settings.poll_interval_ms,
                processed_ids=self.ledger.size(),
            )
            return True

    async def stop(self) -> bool:
        """Disarm the timer. Does not wait for or cancel an in-flight cycle.

        Returns:
            True if the watcher was running
        """
        scheduler, self._scheduler = self._scheduler, None
        self.stats.is_running = False
        if scheduler is None:
            return False
        scheduler.shutdown(wait=False)
        logger.info("watcher_stopped")
        return True

    def status(self) -> WatcherStatus:
        return WatcherStatus(stats=self.stats.snapshot(), processed_count=self.ledger.size())

    async def reset(self) -> None:
        """Stop, then forget the cursor, ledger and failure counts (logout)."""
        await self.stop()
        async with self._cycle_lock:
            self.ledger.clear()
            self.processor.forget_failures()
            await self.store.clear()
            self._state_loaded = True
        logger.info("watcher_state_reset")

    async def _load_state(self) -> None:
        await self.ledger.load()
        self._state_loaded = True

    async def _scheduled_poll(self) -> None:
        result = await self.poll()
        if result.skip_reason == "cycle_in_flight":
            logger.warning("scheduled_poll_overlap_skipped")

    async def poll(self) -> PollResult:
        """Run one cycle now. Never raises.

        Returns a skipped result when a cycle is already in flight or the
        mailbox is not authenticated.
        """
        cycle_id = str(uuid.uuid4())
        if self._cycle_lock.locked():
            logger.info("poll_skipped_cycle_in_flight")
            return PollResult(cycle_id=cycle_id, skip_reason="cycle_in_flight")

        async with self._cycle_lock:
            set_correlation_id(cycle_id)
            try:
                return await self._run_cycle(cycle_id)
            finally:
                set_correlation_id(None)

    async def _run_cycle(self, cycle_id: str) -> PollResult:
        result = PollResult(cycle_id=cycle_id)
        start_time = time.monotonic()

        try:
            authenticated = await self.mailbox.authenticated()
        except Exception as e:
            logger.warning("auth_check_failed", error=str(e))
            authenticated = False
        if not authenticated:
            logger.warning("poll_skipped_not_authenticated")
            result.skip_reason = "not_authenticated"
            return result

        self.stats.last_run = datetime.now(UTC)
        logger.info("poll_cycle_start", has_cursor=self.ledger.cursor is not None)

        try:
            if not self._state_loaded:
                await self._load_state()

            try:
                sync = await self.resolver.resolve(self.ledger.cursor)
            except Exception as e:
                self.stats.errors += 1
                result.skip_reason = "sync_failed"
                logger.error("sync_resolution_failed", error=str(e), error_type=type(e).__name__)
                return result

            result.mode = sync.mode.value
            result.sync_expired = sync.expired
            result.candidates = len(sync.candidates)

            for message_id in sync.candidates:
                outcome = await self.processor.process(message_id)
                match outcome:
                    case ProcessOutcome.CLASSIFIED | ProcessOutcome.REVIEW_COMPLETED:
                        result.classified += 1
                    case ProcessOutcome.FAILED:
                        result.failed += 1
                    case ProcessOutcome.ABANDONED:
                        result.abandoned += 1
                    case _:
                        result.skipped += 1

            self.ledger.cursor = sync.cursor

            if sync.candidates:
                try:
                    await self.ledger.save()
                    result.saved = True
                except PersistenceError as e:
                    # In-memory state is kept; the next cycle saves it again
                    self.stats.errors += 1
                    logger.error("state_persist_failed", error=str(e))

        except PersistenceError as e:
            self.stats.errors += 1
            result.skip_reason = "state_load_failed"
            logger.error("state_load_failed", error=str(e))

        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "poll_cycle_complete",
                mode=result.mode,
                candidates=result.candidates,
                classified=result.classified,
                skipped=result.skipped,
                failed=result.failed,
                abandoned=result.abandoned,
                saved=result.saved,
                duration_ms=result.duration_ms,
            )

        return result
