"""
Provider error classification.

Turns whatever a client raised (typed ClientError subclasses, raw library
exceptions, RPC errors carrying a code or error_message) into one of a small
set of kinds the engine reacts to. Pure functions, no side effects.
"""

import re
from dataclasses import dataclass
from enum import Enum

from channel_discovery.client.base import (
    NotFoundError,
    RateLimitedError,
    SessionInvalidError,
)

DEFAULT_WAIT_SECONDS = 60
CRITICAL_WAIT_SECONDS = 300

FLOOD_CODE = 420

_WAIT_PATTERNS = (
    re.compile(r"FLOOD_WAIT_(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*seconds?", re.IGNORECASE),
)

_FLOOD_MARKERS = ("flood_wait", "floodwaiterror", "flood wait", "a wait of")

SESSION_INVALID_MARKERS = (
    "SESSION_REVOKED",
    "AUTH_KEY_UNREGISTERED",
    "AUTH_KEY_INVALID",
    "SESSION_EXPIRED",
    "USER_DEACTIVATED",
)

NOT_FOUND_MARKERS = (
    "USERNAME_NOT_OCCUPIED",
    "USERNAME_INVALID",
    "CHANNEL_INVALID",
    "CHANNEL_PRIVATE",
    "not found",
)

# Errors that suggest the account itself is restricted
SPAM_INDICATORS = (
    "peer_flood",
    "user_restricted",
    "chat_restricted",
    "user_banned_in_channel",
    "chat_guest_send_forbidden",
)

# Transient conditions that are never a sign of restriction
_NOT_SPAM_MARKERS = ("flood_wait", "flood wait", "floodwait", "timeout", "network")


class ErrorKind(str, Enum):
    """What went wrong, from the crawler's point of view."""

    RATE_LIMITED = "rate_limited"
    SESSION_INVALID = "session_invalid"
    NOT_FOUND = "not_found"
    GENERIC = "generic"
    # Derived by the engine, never returned by classify()
    UNDER_PROVISIONED = "under_provisioned"
    SUSPECTED_SPAM_BAN = "suspected_spam_ban"


@dataclass(frozen=True)
class Classification:
    """Result of classifying a provider error."""

    kind: ErrorKind
    wait_seconds: int = 0
    message: str = ""

    def is_critical(self, threshold: int = CRITICAL_WAIT_SECONDS) -> bool:
        """A rate limit long enough to deserve an error-level log line."""
        return self.kind == ErrorKind.RATE_LIMITED and self.wait_seconds > threshold


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _rpc_message(error: BaseException) -> str:
    value = getattr(error, "error_message", None)
    return value if isinstance(value, str) else ""


def is_rate_limit(error: BaseException) -> bool:
    """Detect a provider throttle in any of its surface forms."""
    if isinstance(error, RateLimitedError):
        return True
    if type(error).__name__ == "FloodWaitError":
        return True

    rpc_message = _rpc_message(error).upper()
    if rpc_message == "FLOOD" or rpc_message.startswith("FLOOD_WAIT"):
        return True
    if getattr(error, "code", None) == FLOOD_CODE:
        return True

    message = _error_message(error).lower()
    return any(marker in message for marker in _FLOOD_MARKERS)


def extract_wait_seconds(error: BaseException) -> int:
    """
    Advertised wait of a rate-limit error.

    A structured ``seconds`` attribute wins; otherwise the message is searched
    for "FLOOD_WAIT_<n>" or "<n> seconds". Falls back to DEFAULT_WAIT_SECONDS.
    """
    seconds = getattr(error, "seconds", None)
    if isinstance(seconds, (int, float)) and not isinstance(seconds, bool) and seconds > 0:
        return int(seconds)

    text = f"{_rpc_message(error)} {_error_message(error)}"
    for pattern in _WAIT_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group(1))
    return DEFAULT_WAIT_SECONDS


def _contains_any(text: str, markers: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(marker.lower() in lowered for marker in markers)


def classify(error: BaseException) -> Classification:
    """Classify a provider error into an ErrorKind."""
    message = _error_message(error)

    if is_rate_limit(error):
        return Classification(
            kind=ErrorKind.RATE_LIMITED,
            wait_seconds=extract_wait_seconds(error),
            message=message,
        )

    text = f"{_rpc_message(error)} {message}"
    if isinstance(error, SessionInvalidError) or _contains_any(text, SESSION_INVALID_MARKERS):
        return Classification(kind=ErrorKind.SESSION_INVALID, message=message)

    if isinstance(error, NotFoundError) or _contains_any(text, NOT_FOUND_MARKERS):
        return Classification(kind=ErrorKind.NOT_FOUND, message=message)

    return Classification(kind=ErrorKind.GENERIC, message=message)


def might_be_spam(error: BaseException) -> bool:
    """True when an error message hints that the account itself is restricted."""
    text = f"{_rpc_message(error)} {_error_message(error)}".lower()
    if any(marker in text for marker in _NOT_SPAM_MARKERS):
        return False
    return any(indicator in text for indicator in SPAM_INDICATORS)


def format_wait_time(seconds: float) -> str:
    """Render a wait as "1h 5m", "4m 10s" or "30s"."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
