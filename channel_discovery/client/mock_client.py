"""
Mock client for testing and development.

Generates a synthetic recommendation graph so the crawler can be exercised
without provider credentials. Useful for:
- Running `channel-discovery crawl --mock` against a local database
- Rehearsing rotation behavior (periodic simulated FloodWaits)
- Development and debugging
"""

import random
import zlib

from channel_discovery.accounts.schemas import Account
from channel_discovery.client.base import (
    ChannelRef,
    ClientFactory,
    NotFoundError,
    RateLimitedError,
    RecommendationClient,
)

# Topic stems combined with suffixes to build plausible channel handles
TOPIC_STEMS = [
    "crypto", "tech", "news", "design", "startup", "python", "travel",
    "finance", "gaming", "science", "music", "books", "memes", "sport",
]

HANDLE_SUFFIXES = [
    "daily", "hub", "digest", "club", "insider", "world", "today", "lab",
    "feed", "channel", "weekly", "talks",
]

CLEAN_SPAMBOT_REPLY = "Good news, no limits are currently applied to your account. You're free as a bird!"


def _stable_seed(text: str) -> int:
    return zlib.crc32(text.encode("utf-8"))


class MockRecommendationClient(RecommendationClient):
    """
    In-process client returning deterministic fake recommendations.

    Each identifier always yields the same neighbors, so repeated passes
    converge exactly like a real crawl. Identifiers containing "missing"
    do not resolve.
    """

    def __init__(
        self,
        account: Account,
        min_recommendations: int = 20,
        max_recommendations: int = 40,
        rate_limit_every: int | None = None,
        rate_limit_seconds: int = 30,
    ):
        """
        Initialize mock client.

        Args:
            account: Account this client is bound to
            min_recommendations: Lower bound of neighbors per channel
            max_recommendations: Upper bound of neighbors per channel
            rate_limit_every: Raise a simulated FloodWait every N calls (None = never)
            rate_limit_seconds: Wait advertised by simulated FloodWaits
        """
        self._account = account
        self._min = min_recommendations
        self._max = max_recommendations
        self._rate_limit_every = rate_limit_every
        self._rate_limit_seconds = rate_limit_seconds
        self._calls = 0
        self._connected = True

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _tick(self) -> None:
        self._calls += 1
        if self._rate_limit_every and self._calls % self._rate_limit_every == 0:
            raise RateLimitedError(self._rate_limit_seconds)

    async def resolve(self, identifier: str) -> ChannelRef:
        self._tick()
        username = identifier.lstrip("@").lower()
        if not username or "missing" in username:
            raise NotFoundError(f"USERNAME_NOT_OCCUPIED: @{username} not found")
        seed = _stable_seed(username)
        return ChannelRef(id=seed, access_hash=seed * 31, username=username)

    async def get_recommendations(self, ref: ChannelRef) -> list[ChannelRef]:
        self._tick()
        rng = random.Random(ref.id)
        count = rng.randint(self._min, self._max)

        refs = []
        for _ in range(count):
            handle = (
                f"{rng.choice(TOPIC_STEMS)}_{rng.choice(HANDLE_SUFFIXES)}"
                f"{rng.randint(1, 999)}"
            )
            seed = _stable_seed(handle)
            refs.append(ChannelRef(id=seed, access_hash=seed * 31, username=handle))
        return refs

    async def send_message(self, peer: str, text: str) -> None:
        return None

    async def get_messages(self, peer: str, limit: int = 3) -> list[str]:
        return [CLEAN_SPAMBOT_REPLY][:limit]

    async def disconnect(self) -> None:
        self._connected = False


class MockClientFactory(ClientFactory):
    """Factory producing MockRecommendationClient instances."""

    def __init__(self, rate_limit_every: int | None = None, **client_kwargs):
        self._rate_limit_every = rate_limit_every
        self._client_kwargs = client_kwargs

    async def connect(self, account: Account) -> RecommendationClient:
        return MockRecommendationClient(
            account,
            rate_limit_every=self._rate_limit_every,
            **self._client_kwargs,
        )
