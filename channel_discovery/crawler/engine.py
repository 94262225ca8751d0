"""
Crawl engine - walks the recommendation graph one source at a time.

Each pass loads a batch of unparsed identifiers, asks the active account for
each one's recommendations and feeds newly seen identifiers back into the
discovery queue. Provider countermeasures are absorbed here:

- Rate limits and revoked sessions rotate to another account
- A streak of low-yield results marks the account as under-provisioned
- A streak of not-found results consults the spam probe
- Generic errors are retried, then the source is recorded as failed

Store errors are not absorbed and propagate to the caller.
"""

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import structlog

from channel_discovery.accounts.pool import AccountPool
from channel_discovery.client.base import ChannelRef
from channel_discovery.crawler.classifier import (
    Classification,
    ErrorKind,
    classify,
    format_wait_time,
)
from channel_discovery.crawler.config import CrawlerConfig
from channel_discovery.crawler.schemas import CrawlProgress, CrawlState
from channel_discovery.crawler.spam import SpamBotProbe, SpamProbe
from channel_discovery.discovery.repository import DiscoveryQueue
from channel_discovery.discovery.schemas import normalize_identifier
from channel_discovery.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

# Per-source outcomes (also used as metric labels)
PARSED = "parsed"
NOT_FOUND = "not_found"
EXHAUSTED = "exhausted"
NO_ACCOUNT = "no_account"
STOPPED = "stopped"


class CrawlEngine:
    """
    Sequential discovery crawler over an AccountPool.

    Usage:
        engine = CrawlEngine(queue, pool)
        progress = await engine.run()  # Runs one pass
        engine.stop()                  # From a signal handler
    """

    def __init__(
        self,
        queue: DiscoveryQueue,
        pool: AccountPool,
        config: CrawlerConfig | None = None,
        spam_probe: SpamProbe | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        """
        Initialize crawl engine.

        Args:
            queue: Discovery queue to read sources from and write results to
            pool: Account pool providing the active client
            config: Crawler configuration (or load from environment)
            spam_probe: Probe for suspected spam restrictions (or SpamBotProbe)
            clock: Current time provider (defaults to UTC wall clock)
            sleep: Cooperative sleep used for pacing (defaults to asyncio.sleep)
        """
        self._config = config or CrawlerConfig()
        self._queue = queue
        self._pool = pool
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep or asyncio.sleep
        self._spam_probe = spam_probe or SpamBotProbe(
            reply_delay=self._config.spam_probe_reply_delay,
            reliable=self._config.spam_probe_reliable,
            sleep=self._sleep,
        )
        self._stop_event = pool.stop_event
        self._state = CrawlState.IDLE
        self._progress: CrawlProgress | None = None
        self._metrics = get_metrics()

    @property
    def state(self) -> CrawlState:
        return self._state

    @property
    def progress(self) -> CrawlProgress | None:
        """Progress of the current (or last) pass."""
        return self._progress

    @property
    def is_stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request the pass to end after the current source."""
        if not self._stop_event.is_set():
            logger.info("Stop requested", state=self._state.value)
        self._stop_event.set()

    async def run(self, batch_size: int | None = None) -> CrawlProgress:
        """
        Run one crawl pass.

        A stop requested during an earlier pass is cleared first, so one
        engine can run consecutive passes.

        Returns:
            Progress of the pass; ``partial`` is set when it ended early
            because no account was available or a stop was requested
        """
        if self._stop_event.is_set():
            logger.debug("Clearing stop request left from the previous pass")
            self._stop_event.clear()

        progress = CrawlProgress(started_at=self._clock())
        self._progress = progress

        self._state = CrawlState.LOADING
        limit = batch_size or self._config.batch_size
        sources = await self._queue.get_unparsed(limit)
        progress.total_sources = len(sources)

        if not sources:
            logger.info("No unparsed sources, nothing to crawl")
            return self._finish(progress, CrawlState.DONE)

        known = await self._queue.get_all_identifiers()
        logger.info("Loaded sources", sources=len(sources), known=len(known))

        if self._pool.current_client is None:
            if await self._pool.connect_first_available() is None:
                progress.partial = True
                return self._finish(progress, CrawlState.WAITING)
        progress.current_account = self._pool.current_account.name

        self._state = CrawlState.CRAWLING
        reporter = asyncio.create_task(self._report_progress(progress))
        try:
            for index, source in enumerate(sources, start=1):
                if self.is_stopping:
                    break

                logger.info(
                    "Crawling source",
                    source=source,
                    position=f"{index}/{len(sources)}",
                    account=progress.current_account,
                )
                outcome = await self._process_source(source, known, progress)

                if outcome == NO_ACCOUNT:
                    logger.error(
                        "No account available, ending pass",
                        source=source,
                        processed=progress.processed_count,
                    )
                    progress.partial = True
                    return self._finish(progress, CrawlState.WAITING)
                if outcome == STOPPED:
                    break
        finally:
            reporter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reporter

        if self.is_stopping and progress.remaining:
            progress.cancelled = True
            progress.partial = True
            logger.info("Crawl pass stopped", remaining=progress.remaining)

        return self._finish(progress, CrawlState.DONE)

    def _finish(self, progress: CrawlProgress, state: CrawlState) -> CrawlProgress:
        self._state = state
        progress.finished_at = self._clock()
        progress.current_source = None
        logger.info("Crawl pass finished", state=state.value, **progress.summary())
        return progress

    async def _report_progress(self, progress: CrawlProgress) -> None:
        """Periodic progress log while a pass is running."""
        while True:
            await asyncio.sleep(self._config.progress_log_interval_seconds)
            logger.info("Crawl progress", source=progress.current_source, **progress.summary())

    async def _pause(self, seconds: float) -> bool:
        """Sleep unless stopping. Returns False if a stop was requested."""
        if self.is_stopping:
            return False
        if seconds > 0:
            await self._sleep(seconds)
        return not self.is_stopping

    async def _process_source(
        self, source: str, known: set[str], progress: CrawlProgress
    ) -> str:
        """Resolve and crawl one source, retrying on the rules above."""
        progress.current_source = source
        started = time.monotonic()
        attempts = 0
        last_error: str | None = None

        while attempts < self._config.max_retries:
            client = self._pool.current_client
            account = self._pool.current_account
            if client is None or account is None:
                return NO_ACCOUNT

            try:
                ref = await client.resolve(source)
                recommendations = await client.get_recommendations(ref)
            except Exception as e:
                classification = classify(e)
                self._metrics.record_error(classification.kind.value)

                if classification.kind == ErrorKind.RATE_LIMITED:
                    attempts += 1
                    last_error = classification.message
                    self._log_rate_limit(classification, account.name, source)
                    self._metrics.record_rate_limit(account.name)
                    if not await self._rotate(progress, classification.wait_seconds, "rate_limited"):
                        return NO_ACCOUNT
                    continue

                if classification.kind == ErrorKind.SESSION_INVALID:
                    attempts += 1
                    last_error = classification.message
                    logger.error(
                        "Session invalid, disabling account",
                        account=account.name,
                        source=source,
                        error=classification.message,
                    )
                    self._pool.mark_revoked(account)
                    if not await self._rotate(progress, 0, "session_invalid"):
                        return NO_ACCOUNT
                    continue

                if classification.kind == ErrorKind.NOT_FOUND:
                    return await self._handle_not_found(source, progress)

                attempts += 1
                last_error = classification.message
                progress.error_count += 1
                logger.warning(
                    "Error crawling source",
                    source=source,
                    account=account.name,
                    attempt=attempts,
                    max_retries=self._config.max_retries,
                    error=classification.message,
                )
                if attempts < self._config.max_retries:
                    self._state = CrawlState.BACKOFF
                    resumed = await self._pause(self._config.error_delay_seconds)
                    self._state = CrawlState.CRAWLING
                    if not resumed:
                        return STOPPED
                continue

            if self._is_low_yield(recommendations, account.name, source, progress):
                self._metrics.record_error(ErrorKind.UNDER_PROVISIONED.value)
                logger.error(
                    "Account under-provisioned, disabling",
                    account=account.name,
                    streak=progress.low_yield_streak,
                )
                progress.low_yield_streak = 0
                self._pool.mark_no_quota(account)
                if not await self._rotate(progress, 0, "no_quota"):
                    return NO_ACCOUNT
                # The low-yield result is discarded; retry on the new account
                continue

            await self._store_results(source, recommendations, known, progress)
            self._metrics.record_source(PARSED, latency=time.monotonic() - started)
            await self._pause(self._config.request_delay_seconds)
            return PARSED

        logger.error(
            "Source failed after retries, marking parsed",
            source=source,
            attempts=attempts,
            error=last_error,
        )
        await self._queue.mark_parsed(source, error_message=last_error)
        progress.processed_count += 1
        progress.failed_sources.append(source)
        self._metrics.record_source(EXHAUSTED, latency=time.monotonic() - started)
        return EXHAUSTED

    def _is_low_yield(
        self,
        recommendations: list[ChannelRef],
        account: str,
        source: str,
        progress: CrawlProgress,
    ) -> bool:
        """Track the low-yield streak. True once it reaches the limit."""
        count = len(recommendations)
        if count == 0:
            return False
        if count > self._config.low_yield_threshold:
            progress.low_yield_streak = 0
            return False

        progress.low_yield_streak += 1
        logger.warning(
            "Few recommendations",
            source=source,
            account=account,
            count=count,
            streak=progress.low_yield_streak,
        )
        return progress.low_yield_streak >= self._config.low_yield_streak

    async def _store_results(
        self,
        source: str,
        recommendations: list[ChannelRef],
        known: set[str],
        progress: CrawlProgress,
    ) -> None:
        fresh = list(dict.fromkeys(
            identifier
            for identifier in (normalize_identifier(ref.username or "") for ref in recommendations)
            if identifier and identifier not in known
        ))

        added = 0
        if fresh:
            added = await self._queue.add_identifiers(fresh)
            known.update(fresh)
            progress.new_identifiers_count += added
            self._metrics.record_discovered(added)

        await self._queue.mark_parsed(source)
        progress.processed_count += 1
        progress.not_found_streak = 0

        if recommendations:
            logger.info(
                "Source parsed",
                source=source,
                recommendations=len(recommendations),
                new=added,
                total_new=progress.new_identifiers_count,
            )
        else:
            logger.warning("No recommendations for source", source=source)

    async def _handle_not_found(self, source: str, progress: CrawlProgress) -> str:
        progress.not_found_streak += 1
        logger.warning("Source not found, skipping", source=source, streak=progress.not_found_streak)

        await self._queue.mark_parsed(source)
        progress.processed_count += 1
        self._metrics.record_source(NOT_FOUND)

        if progress.not_found_streak >= self._config.not_found_streak_threshold:
            available = await self._consult_spam_probe(progress)
            progress.not_found_streak = 0
            if not available:
                return NO_ACCOUNT
        return NOT_FOUND

    async def _consult_spam_probe(self, progress: CrawlProgress) -> bool:
        """
        Ask the spam probe about the active account.

        Returns:
            False if the account had to be rotated away and none is left
        """
        account = self._pool.current_account
        client = self._pool.current_client
        if account is None or client is None:
            return False

        progress.spam_probes += 1
        logger.warning(
            "Not-found streak reached, probing for spam restriction",
            account=account.name,
            streak=progress.not_found_streak,
        )

        try:
            result = await self._spam_probe.probe(client, account)
        except Exception as e:
            classification = classify(e)
            if classification.kind == ErrorKind.RATE_LIMITED:
                self._metrics.record_spam_probe("rate_limited")
                self._metrics.record_rate_limit(account.name)
                self._log_rate_limit(classification, account.name, None)
                return await self._rotate(progress, classification.wait_seconds, "rate_limited")
            logger.warning("Spam probe failed, assuming clean", account=account.name, error=str(e))
            self._metrics.record_spam_probe("skipped")
            return True

        if result.skipped:
            self._metrics.record_spam_probe("skipped")
            return True
        if not result.is_spammed:
            self._metrics.record_spam_probe("clean")
            logger.info("Account is clean, sources really do not exist", account=account.name)
            return True

        self._metrics.record_spam_probe("spammed")
        self._metrics.record_error(ErrorKind.SUSPECTED_SPAM_BAN.value)
        logger.error(
            "Account spam-restricted, holding it",
            account=account.name,
            wait=format_wait_time(self._config.spam_ban_seconds),
        )
        await self._pool.force_rate_limit(account, self._config.spam_ban_seconds, reason="spam")
        return await self._rotate(progress, 0, "spam")

    async def _rotate(self, progress: CrawlProgress, wait_seconds: int, reason: str) -> bool:
        self._state = CrawlState.BACKOFF
        account = await self._pool.rotate(wait_seconds, reason=reason)
        if account is None:
            self._state = CrawlState.WAITING
            return False

        self._state = CrawlState.CRAWLING
        progress.rotations += 1
        if account.name != progress.current_account:
            # Streaks belong to the account that produced them
            progress.low_yield_streak = 0
        progress.current_account = account.name
        return True

    def _log_rate_limit(
        self, classification: Classification, account: str, source: str | None
    ) -> None:
        critical = classification.is_critical(self._config.critical_wait_seconds)
        log = logger.error if critical else logger.warning
        log(
            "Rate limited",
            account=account,
            source=source,
            wait=format_wait_time(classification.wait_seconds),
            critical=critical,
        )
