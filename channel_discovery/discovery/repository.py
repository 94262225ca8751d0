"""
Discovery queue repository.

The target_channels table holds every identifier ever discovered. The crawler
only reads and sets the ``parsed`` flag (whether the identifier has been used
as a crawl source); ``status`` belongs to downstream consumers, which move rows
out of 'new' exactly once.

The table is shared with external tooling, so every mutation is either an
idempotent insert or a single-row conditional update.
"""

import logging
from collections.abc import Iterable

from channel_discovery.accounts.repository import AccountFloodWaitRepository
from channel_discovery.discovery.schemas import (
    QueueItem,
    QueueStats,
    QueueStatus,
    normalize_identifier,
)
from channel_discovery.storage.database import Database, affected_rows

logger = logging.getLogger(__name__)

# Identifier key as normalize_identifier() computes it, applied to stored rows
# that other tooling may have written without normalizing
_KEY_SQL = "lower(btrim(ltrim(btrim(username), '@')))"

_CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS target_channels (
    id            BIGSERIAL PRIMARY KEY,
    username      TEXT NOT NULL UNIQUE,
    status        TEXT NOT NULL DEFAULT 'new',
    parsed        BOOLEAN NOT NULL DEFAULT FALSE,
    error_message TEXT,
    processed_at  TIMESTAMPTZ,
    parsed_at     TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_target_channels_status
    ON target_channels(status);
CREATE INDEX IF NOT EXISTS idx_target_channels_parsed
    ON target_channels(parsed);
CREATE UNIQUE INDEX IF NOT EXISTS idx_target_channels_key
    ON target_channels(({_KEY_SQL}));
"""

_BULK_INSERT_SQL = """
INSERT INTO target_channels (username)
SELECT * FROM unnest($1::text[])
ON CONFLICT DO NOTHING
RETURNING id
"""

_MARK_PARSED_SQL = f"""
UPDATE target_channels
SET parsed = TRUE,
    parsed_at = NOW(),
    error_message = COALESCE($2, error_message)
WHERE {_KEY_SQL} = $1 AND parsed = FALSE
"""

_SET_STATUS_SQL = f"""
UPDATE target_channels
SET status = $2,
    error_message = $3,
    processed_at = NOW()
WHERE {_KEY_SQL} = $1 AND status = 'new'
"""

_STATS_SQL = """
SELECT
    COUNT(*) FILTER (WHERE status = 'new')     AS new,
    COUNT(*) FILTER (WHERE status = 'done')    AS done,
    COUNT(*) FILTER (WHERE status = 'error')   AS error,
    COUNT(*) FILTER (WHERE status = 'skipped') AS skipped,
    COUNT(*)                                   AS total,
    COUNT(*) FILTER (WHERE parsed)             AS parsed,
    COUNT(*) FILTER (WHERE NOT parsed)         AS unparsed
FROM target_channels
"""

_COLUMNS = "id, username, status, parsed, error_message, processed_at, parsed_at, created_at"


def _record_to_item(record) -> QueueItem:
    """Convert an asyncpg Record to a QueueItem."""
    return QueueItem(
        id=record["id"],
        identifier=record["username"],
        status=QueueStatus(record["status"]),
        parsed=record["parsed"],
        error_message=record["error_message"],
        processed_at=record["processed_at"],
        parsed_at=record["parsed_at"],
        created_at=record["created_at"],
    )


class DiscoveryQueue:
    """
    Repository for the discovery queue.

    Provides:
    - Unparsed source selection for the crawler
    - Idempotent bulk insertion of discovered identifiers
    - Per-status batch selection and transitions for downstream consumers
    - Queue statistics

    Tables:
        - target_channels: one row per normalized identifier
    """

    def __init__(self, database: Database):
        """
        Initialize repository.

        Args:
            database: Connected Database instance
        """
        self._db = database

    async def create_tables(self) -> None:
        """
        Create the discovery and flood-wait tables if they don't exist.

        The flood-wait table is owned by AccountFloodWaitRepository; it is
        created here as well so one call prepares the whole schema.
        """
        await self._db.execute(_CREATE_TABLE_SQL)
        await AccountFloodWaitRepository(self._db).create_table()
        logger.info("Discovery tables ensured")

    # -- crawler operations ------------------------------------------------

    async def get_unparsed(self, limit: int) -> list[str]:
        """Identifiers not yet used as crawl sources, in insertion order."""
        rows = await self._db.fetch(
            "SELECT username FROM target_channels WHERE parsed = FALSE ORDER BY id LIMIT $1",
            limit,
        )
        return [r["username"] for r in rows]

    async def add_identifiers(self, identifiers: Iterable[str]) -> int:
        """
        Insert identifiers that are not in the queue yet.

        Identifiers are normalized and deduplicated within the batch; rows
        that already exist are left untouched.

        Returns:
            Number of newly inserted rows
        """
        batch = list(dict.fromkeys(
            n for n in (normalize_identifier(i) for i in identifiers) if n
        ))
        if not batch:
            return 0

        rows = await self._db.fetch(_BULK_INSERT_SQL, batch)
        inserted = len(rows)
        logger.debug("Inserted %d of %d identifiers", inserted, len(batch))
        return inserted

    async def mark_parsed(self, identifier: str, error_message: str | None = None) -> bool:
        """
        Flag an identifier as used as a crawl source.

        Only rows still unparsed are touched, so repeated calls are harmless.
        ``error_message`` is recorded when the source exhausted its retries.

        Returns:
            True if a row transitioned to parsed
        """
        result = await self._db.execute(
            _MARK_PARSED_SQL, normalize_identifier(identifier), error_message
        )
        return affected_rows(result) > 0

    async def get_all_identifiers(self) -> set[str]:
        """Every identifier in the queue (the crawler's known set)."""
        rows = await self._db.fetch("SELECT username FROM target_channels")
        return {normalize_identifier(r["username"]) for r in rows}

    async def get_stats(self) -> QueueStats:
        """Counts per status plus parsed/unparsed totals."""
        row = await self._db.fetchrow(_STATS_SQL)
        if row is None:
            return QueueStats()
        return QueueStats(
            new=row["new"],
            done=row["done"],
            error=row["error"],
            skipped=row["skipped"],
            total=row["total"],
            parsed=row["parsed"],
            unparsed=row["unparsed"],
        )

    # -- downstream consumer operations ------------------------------------

    async def get_next_batch(self, limit: int = 100) -> list[QueueItem]:
        """Rows with status 'new', oldest first."""
        rows = await self._db.fetch(
            f"SELECT {_COLUMNS} FROM target_channels "
            "WHERE status = 'new' ORDER BY id LIMIT $1",
            limit,
        )
        return [_record_to_item(r) for r in rows]

    async def _set_status(
        self, identifier: str, status: QueueStatus, error_message: str | None = None
    ) -> bool:
        result = await self._db.execute(
            _SET_STATUS_SQL, normalize_identifier(identifier), status.value, error_message
        )
        updated = affected_rows(result) > 0
        if not updated:
            logger.debug("No 'new' row for %s, status %s not applied", identifier, status.value)
        return updated

    async def mark_done(self, identifier: str) -> bool:
        return await self._set_status(identifier, QueueStatus.DONE)

    async def mark_error(self, identifier: str, error_message: str) -> bool:
        return await self._set_status(identifier, QueueStatus.ERROR, error_message)

    async def mark_skipped(self, identifier: str, reason: str | None = None) -> bool:
        return await self._set_status(identifier, QueueStatus.SKIPPED, reason)

    async def exists(self, identifier: str) -> bool:
        result = await self._db.fetchval(
            f"SELECT EXISTS(SELECT 1 FROM target_channels WHERE {_KEY_SQL} = $1)",
            normalize_identifier(identifier),
        )
        return bool(result)

    async def get_item(self, identifier: str) -> QueueItem | None:
        row = await self._db.fetchrow(
            f"SELECT {_COLUMNS} FROM target_channels WHERE {_KEY_SQL} = $1",
            normalize_identifier(identifier),
        )
        return _record_to_item(row) if row else None
