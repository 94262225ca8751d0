"""Database repository for the account_flood_wait table.

Persists rate-limit windows so that a restarted crawler does not hammer an
account the provider is still throttling. Rows whose unlock_at has passed are
expired and are filtered out by every read.
"""

import logging
from datetime import datetime

from channel_discovery.accounts.schemas import FloodWaitRecord
from channel_discovery.storage.database import Database, affected_rows

logger = logging.getLogger(__name__)

_CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS account_flood_wait (
    id            BIGSERIAL PRIMARY KEY,
    account_name  TEXT NOT NULL UNIQUE,
    unlock_at     TIMESTAMPTZ NOT NULL,
    reason        TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_account_flood_wait_unlock_at
    ON account_flood_wait(unlock_at);
"""

_UPSERT_SQL = """
INSERT INTO account_flood_wait (account_name, unlock_at, reason)
VALUES ($1, $2, $3)
ON CONFLICT (account_name) DO UPDATE SET
    unlock_at = EXCLUDED.unlock_at,
    reason = EXCLUDED.reason,
    updated_at = NOW()
RETURNING account_name, unlock_at, reason, created_at, updated_at
"""

_COLUMNS = "account_name, unlock_at, reason, created_at, updated_at"


def _record_to_flood_wait(record) -> FloodWaitRecord:
    """Convert an asyncpg Record to a FloodWaitRecord."""
    return FloodWaitRecord(
        account_name=record["account_name"],
        unlock_at=record["unlock_at"],
        reason=record["reason"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


class AccountFloodWaitRepository:
    """CRUD operations for durable account rate-limit windows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_table(self) -> None:
        """Create the account_flood_wait table and index (idempotent)."""
        await self._db.execute(_CREATE_TABLE_SQL)
        logger.info("account_flood_wait table ensured")

    async def set_flood_wait(
        self, account_name: str, unlock_at: datetime, reason: str | None = None
    ) -> FloodWaitRecord:
        """Insert or replace the window for an account (one row per account)."""
        row = await self._db.fetchrow(_UPSERT_SQL, account_name, unlock_at, reason)
        return _record_to_flood_wait(row)

    async def remove_flood_wait(self, account_name: str) -> bool:
        """Delete the window for an account. Returns True if a row was removed."""
        result = await self._db.execute(
            "DELETE FROM account_flood_wait WHERE account_name = $1",
            account_name,
        )
        return affected_rows(result) > 0

    async def get_active_flood_waits(self) -> list[FloodWaitRecord]:
        """All windows that have not expired yet, nearest unlock first."""
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM account_flood_wait "
            "WHERE unlock_at > NOW() ORDER BY unlock_at"
        )
        return [_record_to_flood_wait(r) for r in rows]

    async def get_by_account_name(self, account_name: str) -> FloodWaitRecord | None:
        """The active window for an account, or None if absent or expired."""
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM account_flood_wait "
            "WHERE account_name = $1 AND unlock_at > NOW()",
            account_name,
        )
        return _record_to_flood_wait(row) if row else None

    async def cleanup_expired(self) -> int:
        """Delete expired rows. Returns the number removed."""
        result = await self._db.execute(
            "DELETE FROM account_flood_wait WHERE unlock_at <= NOW()"
        )
        removed = affected_rows(result)
        if removed:
            logger.info("Removed %d expired flood-wait rows", removed)
        return removed

    async def get_all(self) -> list[FloodWaitRecord]:
        """Every row including expired ones (diagnostics)."""
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM account_flood_wait ORDER BY account_name"
        )
        return [_record_to_flood_wait(r) for r in rows]
