"""Tests for CrawlEngine passes."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from channel_discovery.accounts.pool import AccountPool
from channel_discovery.accounts.schemas import Account, AccountState
from channel_discovery.client.base import ClientError, RateLimitedError, SessionInvalidError
from channel_discovery.crawler.config import CrawlerConfig
from channel_discovery.crawler.engine import CrawlEngine
from channel_discovery.crawler.schemas import CrawlState
from channel_discovery.crawler.spam import SpamProbe, SpamProbeResult
from tests.fakes import FakeClock, InMemoryQueue, RecordingSleep, ScriptedClient, ScriptedFactory


def names(prefix: str, count: int) -> list[str]:
    return [f"{prefix}{i}" for i in range(count)]


@pytest.fixture
def clean_probe() -> AsyncMock:
    probe = AsyncMock(spec=SpamProbe)
    probe.probe.return_value = SpamProbeResult(is_spammed=False, raw_response="no limits")
    return probe


def build(
    sources: list[str],
    clients: list[ScriptedClient],
    clock: FakeClock,
    sleep: RecordingSleep,
    config: CrawlerConfig,
    probe: SpamProbe | None = None,
    failing: set[str] | None = None,
):
    accounts = [Account(name=c.name, session=f"session-{c.name}") for c in clients]
    factory = ScriptedFactory({c.name: c for c in clients}, failing=failing or set())
    pool = AccountPool(accounts, factory, config=config, clock=clock, sleep=sleep)
    queue = InMemoryQueue(sources)
    engine = CrawlEngine(
        queue,
        pool,
        config=config,
        spam_probe=probe or AsyncMock(spec=SpamProbe),
        clock=clock,
        sleep=sleep,
    )
    return engine, queue, pool


class TestDiscoveryScenario:
    """A parsed source feeds its new neighbors into the queue."""

    async def test_first_source_adds_neighbors(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"a": [["d", "e"]]})
        engine, queue, _ = build(["a", "b", "c"], [client], clock, sleep, crawler_config)

        progress = await engine.run(batch_size=1)

        assert progress.processed_count == 1
        assert progress.new_identifiers_count == 2
        assert queue.rows["a"]["parsed"] is True
        assert queue.rows["d"] == {"status": "new", "parsed": False, "error_message": None}
        assert queue.rows["e"]["parsed"] is False

        stats = await queue.get_stats()
        assert stats.total == 5
        assert stats.new == 5
        assert stats.parsed == 1
        assert stats.unparsed == 4

    async def test_known_identifiers_are_not_reinserted(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"a": [["b", "@B", "Fresh", "fresh"]]})
        engine, queue, _ = build(["a", "b"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.new_identifiers_count == 1
        assert list(queue.rows) == ["a", "b", "fresh"]
        assert progress.processed_count == 2
        assert engine.state == CrawlState.DONE
        assert progress.partial is False

    async def test_sources_processed_in_queue_order(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X")
        engine, _, _ = build(["c", "a", "b"], [client], clock, sleep, crawler_config)

        await engine.run()

        assert client.resolved == ["c", "a", "b"]

    async def test_request_delay_between_sources(self, clock, sleep) -> None:
        config = CrawlerConfig(request_delay_seconds=2.0)
        engine, _, _ = build(["a", "b"], [ScriptedClient("X")], clock, sleep, config)

        await engine.run()

        assert sleep.calls == [2.0, 2.0]

    async def test_empty_queue(self, clock, sleep, crawler_config) -> None:
        engine, _, _ = build([], [ScriptedClient("X")], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.total_sources == 0
        assert progress.partial is False
        assert engine.state == CrawlState.DONE


class TestRateLimits:
    """Rate limits rotate the pool and retry the source."""

    async def test_single_account_ends_pass_partial(self, clock, sleep) -> None:
        config = CrawlerConfig(
            request_delay_seconds=0.0, safety_buffer_seconds=60, max_unlock_wait_seconds=0
        )
        client = ScriptedClient("X", script={"a": [["d", "e"]], "b": [RateLimitedError(30)]})
        engine, queue, pool = build(["a", "b", "c"], [client], clock, sleep, config)
        start = clock.now

        progress = await engine.run()

        assert progress.processed_count == 1
        assert progress.partial is True
        assert engine.state == CrawlState.WAITING
        health = pool.state_of("X")
        assert health.state == AccountState.RATE_LIMITED
        assert health.until == start + timedelta(seconds=90)
        assert queue.rows["b"]["parsed"] is False

    async def test_rotates_to_next_account(self, clock, sleep, crawler_config) -> None:
        x = ScriptedClient("X", script={"a": [RateLimitedError(30)]})
        y = ScriptedClient("Y", script={"a": [["q"]]})
        engine, queue, pool = build(["a"], [x, y], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.processed_count == 1
        assert progress.rotations == 1
        assert progress.current_account == "Y"
        assert progress.partial is False
        assert pool.state_of("X").state == AccountState.RATE_LIMITED
        assert "q" in queue.rows

    async def test_waits_for_unlock_when_all_limited(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"a": [RateLimitedError(30), ["d"]]})
        engine, queue, _ = build(["a"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.processed_count == 1
        assert progress.partial is False
        assert sleep.calls == [90]
        assert "d" in queue.rows


class TestSessionInvalid:
    async def test_revoked_account_is_replaced(self, clock, sleep, crawler_config) -> None:
        x = ScriptedClient("X", script={"a": [SessionInvalidError("SESSION_REVOKED")]})
        y = ScriptedClient("Y", script={"a": [["z"]]})
        engine, queue, pool = build(["a", "b"], [x, y], clock, sleep, crawler_config)

        progress = await engine.run()

        assert pool.state_of("X").state == AccountState.REVOKED
        assert progress.processed_count == 2
        assert x.resolved == ["a"]
        assert y.resolved == ["a", "b"]

    async def test_last_account_revoked_ends_pass(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"a": [Exception("AUTH_KEY_UNREGISTERED")]})
        engine, _, _ = build(["a"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.partial is True
        assert progress.processed_count == 0


class TestNotFoundStreak:
    """Consecutive not-found sources consult the spam probe."""

    async def test_three_misses_trigger_exactly_one_probe(
        self, clock, sleep, crawler_config, clean_probe
    ) -> None:
        client = ScriptedClient("X", missing={"m0", "m1", "m2"})
        engine, queue, _ = build(
            ["m0", "m1", "m2", "ok"], [client], clock, sleep, crawler_config, probe=clean_probe
        )

        progress = await engine.run()

        clean_probe.probe.assert_awaited_once()
        assert progress.not_found_streak == 0
        assert progress.spam_probes == 1
        assert progress.processed_count == 4
        assert all(row["parsed"] for row in queue.rows.values())

    async def test_streak_resets_after_each_consultation(
        self, clock, sleep, crawler_config, clean_probe
    ) -> None:
        missing = names("m", 7)
        client = ScriptedClient("X", missing=set(missing))
        engine, _, _ = build(missing, [client], clock, sleep, crawler_config, probe=clean_probe)

        progress = await engine.run()

        assert clean_probe.probe.await_count == 2
        assert progress.not_found_streak == 1

    async def test_success_resets_streak(self, clock, sleep, crawler_config, clean_probe) -> None:
        client = ScriptedClient("X", missing={"m0", "m1", "m2", "m3"})
        engine, _, _ = build(
            ["m0", "m1", "ok", "m2", "m3"], [client], clock, sleep, crawler_config, probe=clean_probe
        )

        await engine.run()

        clean_probe.probe.assert_not_awaited()

    async def test_positive_probe_holds_account_and_rotates(
        self, clock, sleep, crawler_config
    ) -> None:
        probe = AsyncMock(spec=SpamProbe)
        probe.probe.return_value = SpamProbeResult(is_spammed=True, raw_response="limited")
        x = ScriptedClient("X", missing={"m0", "m1", "m2"})
        y = ScriptedClient("Y")
        engine, _, pool = build(
            ["m0", "m1", "m2", "ok"], [x, y], clock, sleep, crawler_config, probe=probe
        )
        start = clock.now

        progress = await engine.run()

        health = pool.state_of("X")
        assert health.state == AccountState.RATE_LIMITED
        assert health.until == start + timedelta(seconds=86_400)
        assert health.reason == "spam"
        assert y.resolved == ["ok"]
        assert progress.not_found_streak == 0
        assert progress.current_account == "Y"

    async def test_probe_failure_treated_as_negative(self, clock, sleep, crawler_config) -> None:
        probe = AsyncMock(spec=SpamProbe)
        probe.probe.side_effect = RuntimeError("probe exploded")
        client = ScriptedClient("X", missing={"m0", "m1", "m2"})
        engine, _, pool = build(
            ["m0", "m1", "m2", "ok"], [client], clock, sleep, crawler_config, probe=probe
        )

        progress = await engine.run()

        assert progress.processed_count == 4
        assert progress.not_found_streak == 0
        assert pool.state_of("X").state == AccountState.ACTIVE


class TestGenericErrors:
    """Generic errors are retried, then the source is recorded as failed."""

    async def test_exhausted_source_marked_parsed_once(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"g": [ClientError("boom")]})
        engine, queue, _ = build(["g", "next"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert queue.parsed_calls.count("g") == 1
        assert queue.rows["g"]["parsed"] is True
        assert queue.rows["g"]["error_message"] == "boom"
        assert progress.failed_sources == ["g"]
        assert progress.error_count == 3
        assert client.requested.count("g") == 3
        assert sleep.calls == [5.0, 5.0]
        assert queue.rows["next"]["parsed"] is True

    async def test_retry_then_success(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", script={"a": [ClientError("blip"), ["d"]]})
        engine, queue, _ = build(["a"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.error_count == 1
        assert progress.failed_sources == []
        assert queue.rows["a"]["error_message"] is None
        assert "d" in queue.rows


class TestLowYield:
    """Short recommendation lists mark the account as under-provisioned."""

    async def test_streak_marks_no_quota_and_retries_on_next_account(
        self, clock, sleep, crawler_config
    ) -> None:
        short = {s: [names(f"{s}_", 10)] for s in ("s1", "s2", "s3")}
        x = ScriptedClient("X", script=short)
        y = ScriptedClient("Y", script={"s3": [names("full_", 20)]})
        engine, queue, pool = build(["s1", "s2", "s3", "s4"], [x, y], clock, sleep, crawler_config)

        progress = await engine.run()

        assert pool.state_of("X").state == AccountState.NO_QUOTA
        assert y.resolved == ["s3", "s4"]
        assert progress.processed_count == 4
        assert progress.failed_sources == []
        # Results of the discarded low-yield attempt are not stored
        assert "s3_0" not in queue.rows
        assert "full_0" in queue.rows

    async def test_streak_does_not_carry_to_next_account(
        self, clock, sleep, crawler_config
    ) -> None:
        x = ScriptedClient("X", script={
            "a": [names("a_", 2)],
            "b": [names("b_", 2)],
            "c": [RateLimitedError(30)],
        })
        y = ScriptedClient("Y", script={"c": [names("c_", 2)], "d": [names("d_", 30)]})
        engine, queue, pool = build(["a", "b", "c", "d"], [x, y], clock, sleep, crawler_config)

        progress = await engine.run()

        assert pool.state_of("Y").state == AccountState.ACTIVE
        assert pool.state_of("X").state == AccountState.RATE_LIMITED
        assert y.resolved == ["c", "d"]
        assert progress.processed_count == 4
        assert "c_0" in queue.rows

    async def test_long_result_resets_streak(self, clock, sleep, crawler_config) -> None:
        script = {
            "s1": [names("a", 5)],
            "s2": [names("b", 5)],
            "s3": [names("c", 30)],
            "s4": [names("d", 5)],
        }
        client = ScriptedClient("X", script=script)
        engine, _, pool = build(["s1", "s2", "s3", "s4"], [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert pool.state_of("X").state == AccountState.ACTIVE
        assert progress.low_yield_streak == 1

    async def test_empty_result_does_not_count(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X")
        engine, _, pool = build(names("e", 5), [client], clock, sleep, crawler_config)

        progress = await engine.run()

        assert progress.low_yield_streak == 0
        assert pool.state_of("X").state == AccountState.ACTIVE


class TestStopAndExhaustion:
    async def test_no_account_connects(self, clock, sleep, crawler_config) -> None:
        engine, _, _ = build(["a"], [ScriptedClient("X")], clock, sleep, crawler_config, failing={"X"})

        progress = await engine.run()

        assert progress.partial is True
        assert engine.state == CrawlState.WAITING

    async def test_stop_ends_pass_after_current_source(self, clock, crawler_config) -> None:
        config = CrawlerConfig(request_delay_seconds=1.0)
        holder = {}

        async def stopping_sleep(seconds: float) -> None:
            clock.advance(seconds)
            holder["engine"].stop()

        client = ScriptedClient("X")
        accounts = [Account(name="X", session="x")]
        pool = AccountPool(
            accounts, ScriptedFactory({"X": client}), config=config, clock=clock, sleep=stopping_sleep
        )
        queue = InMemoryQueue(["a", "b", "c"])
        engine = CrawlEngine(
            queue, pool, config=config, spam_probe=AsyncMock(spec=SpamProbe),
            clock=clock, sleep=stopping_sleep,
        )
        holder["engine"] = engine

        progress = await engine.run()

        assert progress.processed_count == 1
        assert progress.cancelled is True
        assert progress.partial is True
        assert client.resolved == ["a"]
        assert engine.is_stopping

    async def test_stop_during_error_backoff_leaves_source_unparsed(self, clock, crawler_config) -> None:
        holder = {}

        async def stopping_sleep(seconds: float) -> None:
            holder["engine"].stop()

        client = ScriptedClient("X", script={"a": [ClientError("boom")]})
        pool = AccountPool(
            [Account(name="X", session="x")],
            ScriptedFactory({"X": client}),
            config=crawler_config,
            clock=clock,
            sleep=stopping_sleep,
        )
        queue = InMemoryQueue(["a"])
        engine = CrawlEngine(
            queue, pool, config=crawler_config, spam_probe=AsyncMock(spec=SpamProbe),
            clock=clock, sleep=stopping_sleep,
        )
        holder["engine"] = engine

        progress = await engine.run()

        assert queue.rows["a"]["parsed"] is False
        assert progress.cancelled is True
        assert client.requested == ["a"]

    async def test_each_pass_starts_with_fresh_progress(self, clock, sleep, crawler_config) -> None:
        client = ScriptedClient("X", missing={"m0", "m1"})
        engine, queue, _ = build(["m0", "m1"], [client], clock, sleep, crawler_config)

        first = await engine.run()
        await queue.add_identifiers(["m2"])
        second = await engine.run()

        assert first.not_found_streak == 2
        assert second.not_found_streak == 0
        assert second is not first

    async def test_engine_runs_again_after_stop(self, clock, crawler_config) -> None:
        config = CrawlerConfig(request_delay_seconds=1.0)
        holder = {"stops": 0}

        async def stop_once(seconds: float) -> None:
            clock.advance(seconds)
            if holder["stops"] == 0:
                holder["stops"] += 1
                holder["engine"].stop()

        client = ScriptedClient("X")
        pool = AccountPool(
            [Account(name="X", session="x")],
            ScriptedFactory({"X": client}),
            config=config,
            clock=clock,
            sleep=stop_once,
        )
        queue = InMemoryQueue(["a", "b", "c"])
        engine = CrawlEngine(
            queue, pool, config=config, spam_probe=AsyncMock(spec=SpamProbe),
            clock=clock, sleep=stop_once,
        )
        holder["engine"] = engine

        first = await engine.run()
        second = await engine.run()

        assert first.cancelled is True
        assert first.processed_count == 1
        assert second.cancelled is False
        assert second.partial is False
        assert second.processed_count == 2
        assert client.resolved == ["a", "b", "c"]
        assert not engine.is_stopping
