"""Crawl pass: error classification, spam probing and the crawl engine.

CrawlEngine is imported from channel_discovery.crawler.engine; it depends on
AccountPool, which in turn uses this package's classifier and config.
"""

from channel_discovery.crawler.classifier import (
    Classification,
    ErrorKind,
    classify,
    format_wait_time,
    might_be_spam,
)
from channel_discovery.crawler.config import CrawlerConfig
from channel_discovery.crawler.schemas import CrawlProgress, CrawlState
from channel_discovery.crawler.spam import SpamBotProbe, SpamProbe, SpamProbeResult

__all__ = [
    "Classification",
    "CrawlerConfig",
    "CrawlProgress",
    "CrawlState",
    "ErrorKind",
    "SpamBotProbe",
    "SpamProbe",
    "SpamProbeResult",
    "classify",
    "format_wait_time",
    "might_be_spam",
]
