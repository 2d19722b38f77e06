"""Running counters for the watcher, exposed as immutable snapshots."""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from mailfilter.engine.models import Category


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    total_processed: int
    important: int
    review: int
    junk: int
    errors: int
    abandoned: int
    last_run: datetime | None
    is_running: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_run"] = self.last_run.isoformat() if self.last_run else None
        return data


@dataclass
class WatcherStats:
    """Mutable counters owned by one watcher. Only the poll cycle writes them."""

    total_processed: int = 0
    important: int = 0
    review: int = 0
    junk: int = 0
    errors: int = 0
    abandoned: int = 0
    last_run: datetime | None = None
    is_running: bool = False

    def record_classified(self, category: Category) -> None:
        self.total_processed += 1
        match category:
            case Category.IMPORTANT:
                self.important += 1
            case Category.REVIEW:
                self.review += 1
            case Category.JUNK:
                self.junk += 1

    def snapshot(self) -> StatsSnapshot:
        return StatsSnapshot(
            total_processed=self.total_processed,
            important=self.important,
            review=self.review,
            junk=self.junk,
            errors=self.errors,
            abandoned=self.abandoned,
            last_run=self.last_run,
            is_running=self.is_running,
        )
