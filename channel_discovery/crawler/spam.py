"""
Spam-restriction probe.

When an account suddenly stops resolving channels that exist, the provider
may have restricted it. The probe asks the provider's spam bot about the
account's status and reads its reply.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from channel_discovery.accounts.schemas import Account
from channel_discovery.client.base import RecommendationClient
from channel_discovery.crawler.classifier import is_rate_limit

logger = structlog.get_logger(__name__)

SPAM_BOT_PEER = "SpamBot"
START_COMMAND = "/start"

# Replies that mean the account is free of restrictions
CLEAN_PHRASES = (
    "ваш аккаунт свободен от каких-либо ограничений",
    "no limits are currently applied",
    "you're free as a bird",
)

RESTRICTION_KEYWORDS = (
    "restricted",
    "limited",
    "spam",
    "спам",
    "ограничен",
    "заблокирован",
    "нарушение",
    "violation",
    "ограничени",
    "блокирован",
    "запрещен",
)


@dataclass(frozen=True)
class SpamProbeResult:
    """Outcome of one probe. ``skipped`` means the probe could not run."""

    is_spammed: bool
    raw_response: str = ""
    skipped: bool = False


def analyze_reply(text: str) -> bool:
    """True when a spam bot reply reports a restriction."""
    lowered = text.lower()
    if any(phrase in lowered for phrase in CLEAN_PHRASES):
        return False
    return any(keyword in lowered for keyword in RESTRICTION_KEYWORDS)


class SpamProbe(ABC):
    """Checks whether the provider has restricted an account."""

    @abstractmethod
    async def probe(
        self, client: RecommendationClient, account: Account
    ) -> SpamProbeResult:
        """
        Probe ``account`` through its connected ``client``.

        Rate-limit errors propagate to the caller; any other failure yields a
        skipped, negative result.
        """
        ...


class SpamBotProbe(SpamProbe):
    """Asks the provider's spam bot and matches its reply against known phrases."""

    def __init__(
        self,
        reply_delay: float = 3.0,
        reliable: bool = False,
        confirm_delay: float = 2.0,
        message_limit: int = 3,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._reply_delay = reply_delay
        self._reliable = reliable
        self._confirm_delay = confirm_delay
        self._message_limit = message_limit
        self._sleep = sleep or asyncio.sleep

    async def probe(
        self, client: RecommendationClient, account: Account
    ) -> SpamProbeResult:
        first = await self._probe_once(client, account)
        if not self._reliable or not first.is_spammed:
            return first

        # The first reply after a restriction is lifted can still be stale
        await self._sleep(self._confirm_delay)
        second = await self._probe_once(client, account)
        logger.info(
            "Spam probe confirmation",
            account=account.name,
            first=first.is_spammed,
            second=second.is_spammed,
        )
        return second

    async def _probe_once(
        self, client: RecommendationClient, account: Account
    ) -> SpamProbeResult:
        logger.info("Probing spam status", account=account.name)
        try:
            await client.send_message(SPAM_BOT_PEER, START_COMMAND)
            await self._sleep(self._reply_delay)
            messages = await client.get_messages(SPAM_BOT_PEER, limit=self._message_limit)
        except Exception as e:
            if is_rate_limit(e):
                logger.warning(
                    "Rate limited while probing spam status",
                    account=account.name,
                    error=str(e),
                )
                raise
            logger.warning(
                "Spam probe failed, treating account as clean",
                account=account.name,
                error=str(e),
            )
            return SpamProbeResult(is_spammed=False, raw_response=str(e), skipped=True)

        if not messages:
            logger.warning("No reply from spam bot", account=account.name)
            return SpamProbeResult(is_spammed=False, skipped=True)

        # Newest message is the reply to our /start
        reply = messages[0].lower()
        is_spammed = analyze_reply(reply)

        if is_spammed:
            logger.warning("Account is spam-restricted", account=account.name, reply=reply[:100])
        else:
            logger.info("Account is clean", account=account.name)
        return SpamProbeResult(is_spammed=is_spammed, raw_response=reply)
