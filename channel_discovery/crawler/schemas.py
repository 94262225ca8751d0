"""Transient state of a crawl pass."""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class CrawlState(enum.Enum):
    """Lifecycle of CrawlEngine within one pass."""

    IDLE = "idle"
    LOADING = "loading"
    CRAWLING = "crawling"
    BACKOFF = "backoff"
    WAITING = "waiting"
    DONE = "done"


@dataclass
class CrawlProgress:
    """
    Counters for one pass, returned by CrawlEngine.run().

    The not-found and low-yield streaks live here rather than on the engine so
    every pass starts from zero.
    """

    total_sources: int = 0
    processed_count: int = 0
    new_identifiers_count: int = 0
    error_count: int = 0
    current_source: str | None = None
    current_account: str | None = None
    partial: bool = False
    cancelled: bool = False
    failed_sources: list[str] = field(default_factory=list)
    not_found_streak: int = 0
    low_yield_streak: int = 0
    rotations: int = 0
    spam_probes: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def remaining(self) -> int:
        return max(self.total_sources - self.processed_count, 0)

    @property
    def percent(self) -> float:
        if not self.total_sources:
            return 100.0
        return round(100.0 * self.processed_count / self.total_sources, 1)

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        end = now or self.finished_at or datetime.now(timezone.utc)
        return max((end - self.started_at).total_seconds(), 0.0)

    def summary(self) -> dict[str, Any]:
        """Flat view used for log lines and CLI output."""
        return {
            "total_sources": self.total_sources,
            "processed": self.processed_count,
            "remaining": self.remaining,
            "percent": self.percent,
            "new_identifiers": self.new_identifiers_count,
            "errors": self.error_count,
            "failed_sources": len(self.failed_sources),
            "rotations": self.rotations,
            "spam_probes": self.spam_probes,
            "account": self.current_account,
            "partial": self.partial,
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds(), 1),
        }
