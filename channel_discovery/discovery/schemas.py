"""Data models for the discovery queue (target_channels table)."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class QueueStatus(str, Enum):
    """Downstream processing status. Transitions only new -> anything else."""

    NEW = "new"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


def normalize_identifier(raw: str) -> str:
    """
    Canonical form of a public identifier.

    Trims whitespace, strips leading "@" and lowercases. Returns "" for input
    that is empty after normalization.
    """
    return raw.strip().lstrip("@").strip().lower()


@dataclass
class QueueItem:
    """One row of the discovery queue."""

    identifier: str
    status: QueueStatus = QueueStatus.NEW
    parsed: bool = False
    error_message: str | None = None
    processed_at: datetime | None = None
    parsed_at: datetime | None = None
    created_at: datetime | None = None
    id: int | None = None


@dataclass
class QueueStats:
    """Counts across the discovery queue."""

    new: int = 0
    done: int = 0
    error: int = 0
    skipped: int = 0
    total: int = 0
    parsed: int = 0
    unparsed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "new": self.new,
            "done": self.done,
            "error": self.error,
            "skipped": self.skipped,
            "total": self.total,
            "parsed": self.parsed,
            "unparsed": self.unparsed,
        }
