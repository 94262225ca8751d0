"""Discovery queue: the set of known identifiers and their crawl/processing state."""

from channel_discovery.discovery.repository import DiscoveryQueue
from channel_discovery.discovery.schemas import (
    QueueItem,
    QueueStats,
    QueueStatus,
    normalize_identifier,
)

__all__ = [
    "DiscoveryQueue",
    "QueueItem",
    "QueueStats",
    "QueueStatus",
    "normalize_identifier",
]
