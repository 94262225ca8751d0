"""Observability layer - structured logging and Prometheus metrics."""

from channel_discovery.observability.logging import get_logger, setup_logging
from channel_discovery.observability.metrics import CrawlMetrics, get_metrics

__all__ = ["setup_logging", "get_logger", "CrawlMetrics", "get_metrics"]
