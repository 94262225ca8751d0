"""Storage layer: PostgreSQL connection pool."""

from channel_discovery.storage.database import Database, affected_rows

__all__ = ["Database", "affected_rows"]
