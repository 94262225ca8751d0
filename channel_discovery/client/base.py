"""
Remote client interface consumed by the crawler.

The wire-level client (MTProto session handling, request encoding) lives
outside this package. Implementations adapt a concrete library to these
abstract classes and map provider payloads to ChannelRef immediately, so that
nothing untyped travels past this boundary.

Provider errors should be raised as the ClientError subclasses below when the
implementation can tell them apart. The classifier also understands raw
library exceptions (FloodWaitError, code 420, "FLOOD_WAIT_x" messages), so an
implementation that lets those through still works.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from channel_discovery.accounts.schemas import Account


@dataclass(frozen=True)
class ChannelRef:
    """Canonical reference to a channel in the provider's graph."""

    id: int
    access_hash: int | None = None
    username: str | None = None


class ClientError(Exception):
    """Base class for errors raised by a RecommendationClient."""


class RateLimitedError(ClientError):
    """Provider throttle with an advertised wait (FloodWait)."""

    def __init__(self, seconds: int, message: str | None = None):
        self.seconds = seconds
        super().__init__(message or f"A wait of {seconds} seconds is required (FLOOD_WAIT_{seconds})")


class SessionInvalidError(ClientError):
    """The account's session was revoked or is no longer registered."""


class NotFoundError(ClientError):
    """The requested identifier does not resolve to a channel."""


class RecommendationClient(ABC):
    """A connected, authenticated client bound to one account."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def resolve(self, identifier: str) -> ChannelRef:
        """
        Resolve a public identifier to a channel reference.

        Raises:
            NotFoundError: identifier is free or not a channel
            RateLimitedError, SessionInvalidError, ClientError
        """
        ...

    @abstractmethod
    async def get_recommendations(self, ref: ChannelRef) -> list[ChannelRef]:
        """Fetch channels the provider recommends for ``ref``."""
        ...

    @abstractmethod
    async def send_message(self, peer: str, text: str) -> None:
        """Send a text message to a peer (used by the spam probe)."""
        ...

    @abstractmethod
    async def get_messages(self, peer: str, limit: int = 3) -> list[str]:
        """Return the texts of the latest messages in a dialog, newest first."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...


class ClientFactory(ABC):
    """Creates connected clients for accounts."""

    @abstractmethod
    async def connect(self, account: Account) -> RecommendationClient:
        """
        Connect and authenticate ``account``.

        Raises on connection or authentication failure.
        """
        ...


def load_client_factory(path: str) -> ClientFactory:
    """
    Instantiate a ClientFactory from a "package.module:attribute" path.

    The attribute may be a ClientFactory subclass (instantiated without
    arguments) or a ready instance.
    """
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {path!r}")

    target = getattr(importlib.import_module(module_name), attr)
    factory = target() if isinstance(target, type) else target
    if not isinstance(factory, ClientFactory):
        raise TypeError(f"{path} is not a ClientFactory")
    return factory
