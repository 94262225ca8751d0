"""
Prometheus metrics for the discovery crawler.

Tracks:
- Sources processed per outcome (parsed, not_found, exhausted)
- New identifiers discovered
- Account rotations and rate limits
- Classified provider errors
- Spam probe results

Metrics are exposed via HTTP endpoint for Prometheus scraping when the
crawl command is started with --metrics.
"""

import logging

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

from channel_discovery.config.settings import get_settings

logger = logging.getLogger(__name__)

# Resolve + recommend round trip, including provider-side throttling
SOURCE_LATENCY_BUCKETS = (0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)


class CrawlMetrics:
    """
    Prometheus metrics collector for crawl passes.

    Usage:
        metrics = get_metrics()
        metrics.record_source("parsed", latency=0.8)
        metrics.record_rotation("rate_limited")
    """

    def __init__(self):
        self.sources_processed = Counter(
            "channel_discovery_sources_processed_total",
            "Sources used as crawl sources",
            ["outcome"],  # parsed, not_found, exhausted
        )

        self.identifiers_discovered = Counter(
            "channel_discovery_identifiers_discovered_total",
            "Identifiers newly inserted into the discovery queue",
        )

        self.account_rotations = Counter(
            "channel_discovery_account_rotations_total",
            "Account rotations",
            ["reason"],  # rate_limited, session_invalid, no_quota, spam
        )

        self.rate_limits = Counter(
            "channel_discovery_rate_limits_total",
            "Rate-limit responses received",
            ["account"],
        )

        self.errors = Counter(
            "channel_discovery_errors_total",
            "Classified provider errors",
            ["kind"],
        )

        self.spam_probes = Counter(
            "channel_discovery_spam_probes_total",
            "Spam probe consultations",
            ["result"],  # spammed, clean, skipped
        )

        self.accounts_available = Gauge(
            "channel_discovery_accounts_available",
            "Accounts currently usable for crawling",
        )

        self.source_latency = Histogram(
            "channel_discovery_source_latency_seconds",
            "Time to resolve a source and fetch its recommendations",
            buckets=SOURCE_LATENCY_BUCKETS,
        )

        logger.info("Prometheus metrics initialized")

    def start_server(self, port: int | None = None) -> None:
        """Start Prometheus metrics HTTP server (port defaults to settings)."""
        port = port or get_settings().metrics_port
        start_http_server(port, registry=REGISTRY)
        logger.info("Prometheus metrics server started on port %d", port)

    def record_source(self, outcome: str, latency: float | None = None) -> None:
        self.sources_processed.labels(outcome=outcome).inc()
        if latency is not None:
            self.source_latency.observe(latency)

    def record_discovered(self, count: int) -> None:
        if count > 0:
            self.identifiers_discovered.inc(count)

    def record_rotation(self, reason: str) -> None:
        self.account_rotations.labels(reason=reason).inc()

    def record_rate_limit(self, account: str) -> None:
        self.rate_limits.labels(account=account).inc()

    def record_error(self, kind: str) -> None:
        self.errors.labels(kind=kind).inc()

    def record_spam_probe(self, result: str) -> None:
        self.spam_probes.labels(result=result).inc()

    def set_accounts_available(self, count: int) -> None:
        self.accounts_available.set(count)


# Global metrics instance
_metrics: CrawlMetrics | None = None


def get_metrics() -> CrawlMetrics:
    """Get global metrics collector instance."""
    global _metrics
    if _metrics is None:
        _metrics = CrawlMetrics()
    return _metrics
