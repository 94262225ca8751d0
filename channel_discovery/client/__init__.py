"""Remote client interface and a mock implementation for development."""

from channel_discovery.client.base import (
    ChannelRef,
    ClientError,
    ClientFactory,
    NotFoundError,
    RateLimitedError,
    RecommendationClient,
    SessionInvalidError,
    load_client_factory,
)
from channel_discovery.client.mock_client import MockClientFactory, MockRecommendationClient

__all__ = [
    "ChannelRef",
    "ClientError",
    "ClientFactory",
    "MockClientFactory",
    "MockRecommendationClient",
    "NotFoundError",
    "RateLimitedError",
    "RecommendationClient",
    "SessionInvalidError",
    "load_client_factory",
]
