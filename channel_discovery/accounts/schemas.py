"""Data models for crawler accounts and their health."""

import enum
from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class Account:
    """A provider account used for crawling.

    Loaded once from configuration and never persisted. ``session`` is the
    opaque credential handed to the client factory.
    """

    name: str
    session: str = field(repr=False)
    api_id: int = 0
    api_hash: str = field(default="", repr=False)
    session_key: str = ""


class AccountState(enum.Enum):
    """Health states of an account within one process lifetime."""

    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    REVOKED = "revoked"
    NO_QUOTA = "no_quota"


@dataclass
class AccountHealth:
    """Mutable health of one account, owned by AccountPool.

    ``until`` is only meaningful for RATE_LIMITED; such an account becomes
    usable again once ``now >= until``.
    """

    state: AccountState = AccountState.ACTIVE
    until: datetime | None = None
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        """REVOKED and NO_QUOTA last until process restart."""
        return self.state in (AccountState.REVOKED, AccountState.NO_QUOTA)

    def is_available(self, now: datetime) -> bool:
        if self.state == AccountState.ACTIVE:
            return True
        if self.state == AccountState.RATE_LIMITED:
            return self.until is None or now >= self.until
        return False


@dataclass
class FloodWaitRecord:
    """Durable mirror of a rate-limited account (account_flood_wait row)."""

    account_name: str
    unlock_at: datetime
    reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.unlock_at <= now
