"""Crawler accounts: models, durable flood-wait state and the rotating pool.

AccountPool lives in channel_discovery.accounts.pool and is imported from
there; it depends on the client interface, which itself imports Account.
"""

from channel_discovery.accounts.schemas import (
    Account,
    AccountHealth,
    AccountState,
    FloodWaitRecord,
)
from channel_discovery.accounts.repository import AccountFloodWaitRepository

__all__ = [
    "Account",
    "AccountFloodWaitRepository",
    "AccountHealth",
    "AccountState",
    "FloodWaitRecord",
]
