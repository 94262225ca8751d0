"""
Account pool with health tracking and rotation.

Owns the health of every configured account and the connected client of the
active one. Rate-limited accounts recover on their own once their window has
passed; revoked and no-quota accounts stay out of service until restart.

Rate-limit windows are mirrored to the account_flood_wait table when a
repository is given, so a restarted crawler resumes with the same windows
(see restore()).
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from channel_discovery.accounts.repository import AccountFloodWaitRepository
from channel_discovery.accounts.schemas import Account, AccountHealth, AccountState
from channel_discovery.client.base import ClientFactory, RecommendationClient
from channel_discovery.crawler.classifier import format_wait_time
from channel_discovery.crawler.config import CrawlerConfig
from channel_discovery.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountPool:
    """
    Rotating pool of provider accounts.

    Usage:
        pool = AccountPool(accounts, factory, flood_wait_repo=repo)
        await pool.restore()
        account = await pool.connect_first_available()
        ...
        account = await pool.rotate(wait_seconds=30, reason="rate_limited")
    """

    def __init__(
        self,
        accounts: Sequence[Account],
        factory: ClientFactory,
        config: CrawlerConfig | None = None,
        flood_wait_repo: AccountFloodWaitRepository | None = None,
        clock: Clock | None = None,
        sleep: Sleep | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        """
        Initialize the pool.

        Args:
            accounts: Accounts in configured order (names must be unique)
            factory: Creates connected clients
            config: Safety buffer, unlock logging interval and wait cap
            flood_wait_repo: Durable mirror of rate-limit windows (optional)
            clock: Current time provider (defaults to UTC wall clock)
            sleep: Cooperative sleep (defaults to asyncio.sleep)
            stop_event: When set, an in-progress unlock wait gives up
        """
        names = [a.name for a in accounts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate account names: {', '.join(duplicates)}")

        config = config or CrawlerConfig()
        self._accounts = list(accounts)
        self._factory = factory
        self._repo = flood_wait_repo
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        self._stop_event = stop_event or asyncio.Event()

        self._safety_buffer = config.safety_buffer_seconds
        self._log_interval = config.unlock_log_interval_seconds
        self._max_unlock_wait = config.max_unlock_wait_seconds

        self._health: dict[str, AccountHealth] = {a.name: AccountHealth() for a in self._accounts}
        self._clients: dict[str, RecommendationClient] = {}
        self._current_index: int | None = None
        self._metrics = get_metrics()

    # -- introspection -----------------------------------------------------

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts)

    @property
    def current_account(self) -> Account | None:
        if self._current_index is None:
            return None
        return self._accounts[self._current_index]

    @property
    def current_client(self) -> RecommendationClient | None:
        account = self.current_account
        if account is None:
            return None
        return self._clients.get(account.name)

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    def state_of(self, name: str) -> AccountHealth:
        """Health of an account by name (KeyError if unknown)."""
        return self._health[name]

    def is_available(self, name: str) -> bool:
        return self._health[name].is_available(self._clock())

    def available_count(self) -> int:
        now = self._clock()
        return sum(1 for h in self._health.values() if h.is_available(now))

    def snapshot(self) -> list[dict[str, Any]]:
        """Per-account health for status output."""
        now = self._clock()
        current = self.current_account
        rows = []
        for account in self._accounts:
            health = self._health[account.name]
            remaining = None
            if health.state == AccountState.RATE_LIMITED and health.until is not None:
                remaining = max((health.until - now).total_seconds(), 0.0)
            rows.append({
                "name": account.name,
                "state": health.state.value,
                "available": health.is_available(now),
                "until": health.until.isoformat() if health.until else None,
                "remaining_seconds": remaining,
                "reason": health.reason,
                "current": current is not None and current.name == account.name,
            })
        return rows

    # -- startup -----------------------------------------------------------

    async def restore(self) -> int:
        """
        Load active rate-limit windows from the durable store.

        Returns:
            Number of accounts put back into RATE_LIMITED
        """
        if self._repo is None:
            return 0

        restored = 0
        for record in await self._repo.get_active_flood_waits():
            health = self._health.get(record.account_name)
            if health is None or health.is_terminal:
                continue
            health.state = AccountState.RATE_LIMITED
            health.until = record.unlock_at
            health.reason = record.reason
            restored += 1
            logger.info(
                "Restored rate-limit window",
                account=record.account_name,
                unlock_at=record.unlock_at.isoformat(),
                remaining=format_wait_time((record.unlock_at - self._clock()).total_seconds()),
            )

        self._metrics.set_accounts_available(self.available_count())
        return restored

    async def connect_first_available(self) -> Account | None:
        """Connect the first usable account in configured order."""
        for index, account in enumerate(self._accounts):
            if not self.is_available(account.name):
                logger.debug(
                    "Skipping unavailable account",
                    account=account.name,
                    state=self._health[account.name].state.value,
                )
                continue

            client = await self._try_connect(account)
            if client is None:
                continue

            await self._activate(index)
            logger.info("Connected account", account=account.name)
            return account

        logger.error("No account could be connected", accounts=len(self._accounts))
        self._current_index = None
        return None

    # -- rotation ----------------------------------------------------------

    async def rotate(self, wait_seconds: int = 0, reason: str | None = None) -> Account | None:
        """
        Put the current account on hold and switch to another one.

        The current account becomes RATE_LIMITED for ``wait_seconds`` plus the
        safety buffer (or until now when the wait is unknown, meaning "try the
        others first"). Other accounts are scanned round-robin after the
        current one. If none is usable, blocks until the nearest rate-limit
        window ends and reconnects that account.

        Returns:
            The new active account, or None when nothing is available and
            nothing is worth waiting for (or the wait is capped or stopped)
        """
        previous = self.current_account
        reason = reason or "rate_limited"

        if previous is not None:
            await self._hold(previous, wait_seconds, reason)

        count = len(self._accounts)
        if self._current_index is None:
            order = list(range(count))
        else:
            order = [(self._current_index + offset) % count for offset in range(1, count)]

        for index in order:
            account = self._accounts[index]
            if not self.is_available(account.name):
                continue
            client = await self._try_connect(account)
            if client is None:
                continue
            await self._activate(index)
            self._log_rotation(previous, account, reason)
            return account

        return await self._wait_for_unlock(previous, reason)

    async def _wait_for_unlock(self, previous: Account | None, reason: str) -> Account | None:
        while True:
            target = self._nearest_unlock()
            if target is None:
                logger.error(
                    "No accounts available and none pending unlock",
                    previous=previous.name if previous else None,
                )
                self._metrics.set_accounts_available(0)
                return None

            index, until = target
            account = self._accounts[index]
            remaining = (until - self._clock()).total_seconds()

            if self._max_unlock_wait is not None and remaining > self._max_unlock_wait:
                logger.warning(
                    "Nearest unlock exceeds maximum wait, giving up",
                    account=account.name,
                    remaining=format_wait_time(remaining),
                    max_wait=format_wait_time(self._max_unlock_wait),
                )
                return None

            if not await self._sleep_until(account, until):
                return None

            client = await self._try_connect(account)
            if client is None:
                # Window is over, so this account no longer counts as pending
                continue

            await self._activate(index)
            self._log_rotation(previous, account, reason)
            return account

    def _nearest_unlock(self) -> tuple[int, datetime] | None:
        now = self._clock()
        nearest: tuple[int, datetime] | None = None
        for index, account in enumerate(self._accounts):
            health = self._health[account.name]
            if health.state != AccountState.RATE_LIMITED or health.until is None:
                continue
            if health.until <= now:
                continue
            if nearest is None or health.until < nearest[1]:
                nearest = (index, health.until)
        return nearest

    async def _sleep_until(self, account: Account, until: datetime) -> bool:
        """Sleep in log-interval chunks. Returns False if stopped."""
        remaining = (until - self._clock()).total_seconds()
        logger.warning(
            "All accounts unavailable, waiting for unlock",
            account=account.name,
            wait=format_wait_time(remaining),
            unlock_at=until.isoformat(),
        )

        while True:
            if self._stop_event.is_set():
                logger.info("Unlock wait interrupted by stop request", account=account.name)
                return False
            remaining = (until - self._clock()).total_seconds()
            if remaining <= 0:
                break
            await self._sleep(min(remaining, self._log_interval))
            if self._stop_event.is_set():
                logger.info("Unlock wait interrupted by stop request", account=account.name)
                return False
            remaining = (until - self._clock()).total_seconds()
            if remaining > 0:
                logger.info(
                    "Still waiting for account unlock",
                    account=account.name,
                    remaining=format_wait_time(remaining),
                )

        logger.info("Account unlocked", account=account.name)
        return True

    def _log_rotation(self, previous: Account | None, account: Account, reason: str) -> None:
        self._metrics.record_rotation(reason)
        logger.info(
            "Rotated account",
            previous=previous.name if previous else None,
            account=account.name,
            reason=reason,
            available=self.available_count(),
        )

    # -- health transitions ------------------------------------------------

    async def _hold(self, account: Account, wait_seconds: int, reason: str) -> None:
        health = self._health[account.name]
        if health.is_terminal:
            return

        now = self._clock()
        if wait_seconds > 0:
            until = now + timedelta(seconds=wait_seconds + self._safety_buffer)
        else:
            until = now

        if (
            health.state == AccountState.RATE_LIMITED
            and health.until is not None
            and health.until > until
        ):
            logger.debug(
                "Keeping longer rate-limit window",
                account=account.name,
                until=health.until.isoformat(),
            )
            return

        health.state = AccountState.RATE_LIMITED
        health.until = until
        health.reason = reason

        if wait_seconds > 0:
            logger.warning(
                "Account rate limited",
                account=account.name,
                wait=format_wait_time(wait_seconds),
                buffer_seconds=self._safety_buffer,
                unlock_at=until.isoformat(),
                reason=reason,
            )
            await self._persist(account.name, until, reason)
        else:
            logger.info("Account put aside, trying others first", account=account.name, reason=reason)

    async def force_rate_limit(
        self, account: Account | None = None, seconds: int = 0, reason: str | None = None
    ) -> None:
        """Impose a fixed rate-limit window (spam escalation path)."""
        account = account or self.current_account
        if account is None:
            return
        health = self._health[account.name]
        if health.is_terminal:
            return

        until = self._clock() + timedelta(seconds=seconds)
        longer_window = (
            health.state == AccountState.RATE_LIMITED
            and health.until is not None
            and health.until > until
        )
        if not longer_window:
            health.state = AccountState.RATE_LIMITED
            health.until = until
            health.reason = reason
        logger.warning(
            "Forced rate limit",
            account=account.name,
            wait=format_wait_time(seconds),
            reason=reason,
        )
        await self._persist(account.name, health.until, health.reason)

    def mark_revoked(self, account: Account | None = None) -> None:
        """Take an account out of service permanently (session invalid)."""
        self._set_terminal(account, AccountState.REVOKED, "session_invalid")

    def mark_no_quota(self, account: Account | None = None) -> None:
        """Take an account out of service permanently (under-provisioned)."""
        self._set_terminal(account, AccountState.NO_QUOTA, "low_yield")

    def _set_terminal(self, account: Account | None, state: AccountState, reason: str) -> None:
        account = account or self.current_account
        if account is None:
            return
        health = self._health[account.name]
        health.state = state
        health.until = None
        health.reason = reason
        logger.warning("Account disabled", account=account.name, state=state.value, reason=reason)
        self._metrics.set_accounts_available(self.available_count())

    async def _persist(self, name: str, until: datetime, reason: str | None) -> None:
        if self._repo is None:
            return
        try:
            await self._repo.set_flood_wait(name, until, reason)
        except Exception as e:
            # In-memory health is authoritative for this process
            logger.error("Failed to persist rate-limit window", account=name, error=str(e))

    async def _forget(self, name: str) -> None:
        if self._repo is None:
            return
        try:
            await self._repo.remove_flood_wait(name)
        except Exception as e:
            logger.error("Failed to remove rate-limit window", account=name, error=str(e))

    # -- connections -------------------------------------------------------

    async def _try_connect(self, account: Account) -> RecommendationClient | None:
        cached = self._clients.get(account.name)
        if cached is not None and cached.is_connected:
            return cached

        try:
            client = await self._factory.connect(account)
        except Exception as e:
            logger.error("Failed to connect account", account=account.name, error=str(e))
            return None

        self._clients[account.name] = client
        return client

    async def _activate(self, index: int) -> None:
        account = self._accounts[index]
        health = self._health[account.name]
        self._current_index = index

        if health.state == AccountState.RATE_LIMITED:
            health.state = AccountState.ACTIVE
            health.until = None
            health.reason = None
            await self._forget(account.name)

        self._metrics.set_accounts_available(self.available_count())

    async def disconnect_all(self) -> None:
        """Disconnect every cached client."""
        for name, client in list(self._clients.items()):
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting account", account=name, error=str(e))
        self._clients.clear()
        self._current_index = None
