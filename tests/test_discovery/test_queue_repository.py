"""Tests for DiscoveryQueue."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from channel_discovery.discovery.repository import DiscoveryQueue
from channel_discovery.discovery.schemas import QueueStatus


@pytest.fixture
def mock_database() -> AsyncMock:
    """Mock Database instance matching the Database API."""
    db = AsyncMock()
    db.fetch = AsyncMock(return_value=[])
    db.fetchval = AsyncMock(return_value=None)
    db.fetchrow = AsyncMock(return_value=None)
    db.execute = AsyncMock(return_value="UPDATE 1")
    return db


@pytest.fixture
def queue_row() -> dict:
    """A dict mimicking an asyncpg Record for a target_channels row."""
    return {
        "id": 7,
        "username": "tech_daily",
        "status": "new",
        "parsed": False,
        "error_message": None,
        "processed_at": None,
        "parsed_at": None,
        "created_at": datetime(2025, 1, 1, tzinfo=timezone.utc),
    }


class TestCreateTables:
    """Tests for DDL."""

    async def test_creates_both_tables(self, mock_database: AsyncMock) -> None:
        await DiscoveryQueue(mock_database).create_tables()

        statements = [c[0][0] for c in mock_database.execute.call_args_list]
        assert any("CREATE TABLE IF NOT EXISTS target_channels" in s for s in statements)
        assert any("CREATE TABLE IF NOT EXISTS account_flood_wait" in s for s in statements)
        assert any("idx_target_channels_parsed" in s for s in statements)
        assert any("CREATE UNIQUE INDEX IF NOT EXISTS idx_target_channels_key" in s for s in statements)


class TestGetUnparsed:
    """Tests for source selection."""

    async def test_returns_usernames_in_insertion_order(self, mock_database: AsyncMock) -> None:
        mock_database.fetch.return_value = [{"username": "a"}, {"username": "b"}]

        result = await DiscoveryQueue(mock_database).get_unparsed(100)

        sql, limit = mock_database.fetch.call_args[0]
        assert "parsed = FALSE" in sql
        assert "ORDER BY id" in sql
        assert limit == 100
        assert result == ["a", "b"]


class TestAddIdentifiers:
    """Tests for idempotent insertion."""

    async def test_normalizes_and_dedupes_batch(self, mock_database: AsyncMock) -> None:
        mock_database.fetch.return_value = [{"id": 1}]

        inserted = await DiscoveryQueue(mock_database).add_identifiers(
            ["@Foo", "foo", " FOO ", "bar", "", "@"]
        )

        sql, batch = mock_database.fetch.call_args[0]
        assert "unnest($1::text[])" in sql
        assert "ON CONFLICT DO NOTHING" in sql
        assert "RETURNING" in sql
        assert batch == ["foo", "bar"]
        assert inserted == 1

    async def test_count_is_rows_returned(self, mock_database: AsyncMock) -> None:
        queue = DiscoveryQueue(mock_database)
        mock_database.fetch.return_value = [{"id": 1}, {"id": 2}]
        assert await queue.add_identifiers(["d", "e"]) == 2

        # Second call: every row conflicts, nothing is returned
        mock_database.fetch.return_value = []
        assert await queue.add_identifiers(["d", "e"]) == 0

    async def test_empty_batch_skips_query(self, mock_database: AsyncMock) -> None:
        assert await DiscoveryQueue(mock_database).add_identifiers(["", "  "]) == 0
        mock_database.fetch.assert_not_called()


class TestMarkParsed:
    """Tests for the parsed flag."""

    async def test_conditional_update(self, mock_database: AsyncMock) -> None:
        result = await DiscoveryQueue(mock_database).mark_parsed("@Source")

        sql, identifier, error = mock_database.execute.call_args[0]
        assert "SET parsed = TRUE" in sql
        assert "parsed_at = NOW()" in sql
        assert "AND parsed = FALSE" in sql
        assert identifier == "source"
        assert error is None
        assert result is True

    async def test_records_error_message(self, mock_database: AsyncMock) -> None:
        await DiscoveryQueue(mock_database).mark_parsed("source", error_message="boom")
        assert mock_database.execute.call_args[0][2] == "boom"

    async def test_matches_rows_stored_unnormalized(self, mock_database: AsyncMock) -> None:
        mock_database.fetch.return_value = [{"username": "Foo"}]
        queue = DiscoveryQueue(mock_database)

        sources = await queue.get_unparsed(10)
        assert await queue.mark_parsed(sources[0]) is True

        sql, identifier, _ = mock_database.execute.call_args[0]
        assert "WHERE lower(btrim(ltrim(btrim(username), '@'))) = $1" in sql
        assert identifier == "foo"

    async def test_absent_or_already_parsed_is_noop(self, mock_database: AsyncMock) -> None:
        mock_database.execute.return_value = "UPDATE 0"
        assert await DiscoveryQueue(mock_database).mark_parsed("ghost") is False


class TestGetStats:
    """Tests for queue statistics."""

    async def test_maps_counts(self, mock_database: AsyncMock) -> None:
        mock_database.fetchrow.return_value = {
            "new": 5, "done": 0, "error": 0, "skipped": 0,
            "total": 5, "parsed": 1, "unparsed": 4,
        }

        stats = await DiscoveryQueue(mock_database).get_stats()

        assert stats.new == 5
        assert stats.total == 5
        assert stats.parsed == 1
        assert stats.unparsed == 4

    async def test_empty_result(self, mock_database: AsyncMock) -> None:
        stats = await DiscoveryQueue(mock_database).get_stats()
        assert stats.total == 0


class TestKnownSet:
    """Tests for get_all_identifiers."""

    async def test_returns_set(self, mock_database: AsyncMock) -> None:
        mock_database.fetch.return_value = [{"username": "a"}, {"username": "b"}]
        assert await DiscoveryQueue(mock_database).get_all_identifiers() == {"a", "b"}

    async def test_normalizes_stored_rows(self, mock_database: AsyncMock) -> None:
        mock_database.fetch.return_value = [{"username": "Foo"}, {"username": "@bar"}]
        assert await DiscoveryQueue(mock_database).get_all_identifiers() == {"foo", "bar"}


class TestDownstreamOperations:
    """Tests for status transitions used by downstream consumers."""

    async def test_get_next_batch(self, mock_database: AsyncMock, queue_row: dict) -> None:
        mock_database.fetch.return_value = [queue_row]

        items = await DiscoveryQueue(mock_database).get_next_batch(10)

        assert "status = 'new'" in mock_database.fetch.call_args[0][0]
        assert items[0].identifier == "tech_daily"
        assert items[0].status == QueueStatus.NEW
        assert items[0].id == 7

    @pytest.mark.parametrize(
        "method,expected_status",
        [("mark_done", "done"), ("mark_skipped", "skipped")],
    )
    async def test_transitions_only_from_new(
        self, mock_database: AsyncMock, method: str, expected_status: str
    ) -> None:
        result = await getattr(DiscoveryQueue(mock_database), method)("@Tech_Daily")

        sql, identifier, status, _ = mock_database.execute.call_args[0]
        assert "AND status = 'new'" in sql
        assert "lower(" in sql
        assert identifier == "tech_daily"
        assert status == expected_status
        assert result is True

    async def test_mark_error_records_message(self, mock_database: AsyncMock) -> None:
        await DiscoveryQueue(mock_database).mark_error("x", "CHANNEL_PRIVATE")

        args = mock_database.execute.call_args[0]
        assert args[2] == "error"
        assert args[3] == "CHANNEL_PRIVATE"

    async def test_transition_rejected_when_not_new(self, mock_database: AsyncMock) -> None:
        mock_database.execute.return_value = "UPDATE 0"
        assert await DiscoveryQueue(mock_database).mark_done("x") is False

    async def test_exists(self, mock_database: AsyncMock) -> None:
        mock_database.fetchval.return_value = True
        assert await DiscoveryQueue(mock_database).exists("@X") is True
        assert mock_database.fetchval.call_args[0][1] == "x"

    async def test_get_item(self, mock_database: AsyncMock, queue_row: dict) -> None:
        queue = DiscoveryQueue(mock_database)
        assert await queue.get_item("missing") is None

        mock_database.fetchrow.return_value = queue_row
        item = await queue.get_item("tech_daily")
        assert item.parsed is False
