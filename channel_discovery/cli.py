"""
Command-line interface for channel-discovery.

Provides commands to seed and inspect the discovery queue, run crawl passes
and check account and database health.

Usage:
    channel-discovery init-db                # Create tables
    channel-discovery add-sources durov tech # Seed the queue
    channel-discovery crawl                  # Run one crawl pass
    channel-discovery stats                  # Queue statistics
    channel-discovery accounts               # Configured accounts
    channel-discovery flood-waits --cleanup  # Rate-limit windows
    channel-discovery health                 # Check dependencies
"""

import asyncio
import signal
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import structlog

from channel_discovery.client.base import ClientFactory, load_client_factory
from channel_discovery.client.mock_client import MockClientFactory
from channel_discovery.config.accounts import load_accounts
from channel_discovery.config.settings import Settings, get_settings
from channel_discovery.observability.logging import bind_context, setup_logging
from channel_discovery.observability.metrics import get_metrics

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_NO_ACCOUNT = 1
EXIT_PARTIAL = 2


def _load_configured_accounts(settings: Settings):
    return load_accounts(
        prefix=settings.accounts_prefix,
        api_id=settings.api_id or None,
        api_hash=settings.api_hash or None,
    )


def _create_client_factory(settings: Settings, use_mock: bool) -> ClientFactory:
    """Client factory from settings, or the mock client when requested."""
    if use_mock:
        logger.warning("Using mock client, discovered identifiers are synthetic")
        return MockClientFactory()
    if not settings.client_factory:
        raise click.ClickException(
            "No client factory configured (set CLIENT_FACTORY or pass --mock)"
        )
    return load_client_factory(settings.client_factory)


def _read_identifiers(identifiers: tuple[str, ...], file: str | None) -> list[str]:
    """Identifiers from arguments and an optional file (one per line, # comments)."""
    collected = list(identifiers)
    if file:
        for line in Path(file).read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                collected.append(line)
    return collected


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Channel Discovery - account-rotating recommendation crawler."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from channel_discovery.discovery.repository import DiscoveryQueue
    from channel_discovery.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        try:
            await DiscoveryQueue(db).create_tables()
            click.echo("Database initialized successfully")
        finally:
            await db.close()

    asyncio.run(run())


@main.command("add-sources")
@click.argument("identifiers", nargs=-1)
@click.option(
    "--file", "file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="File with one identifier per line",
)
def add_sources(identifiers: tuple[str, ...], file: str | None) -> None:
    """Seed the discovery queue with identifiers.

    Example:
        channel-discovery add-sources durov @telegram
        channel-discovery add-sources --file seeds.txt
    """
    from channel_discovery.discovery.repository import DiscoveryQueue
    from channel_discovery.storage.database import Database

    collected = _read_identifiers(identifiers, file)
    if not collected:
        click.echo("No identifiers given", err=True)
        sys.exit(1)

    async def run():
        db = Database()
        await db.connect()

        try:
            added = await DiscoveryQueue(db).add_identifiers(collected)
        finally:
            await db.close()

        click.echo(f"Added {added} new identifiers ({len(collected) - added} already known or invalid)")

    asyncio.run(run())


@main.command()
@click.option("--batch-size", default=None, type=int, help="Sources to crawl in this pass")
@click.option("--mock", is_flag=True, help="Use the mock client")
@click.option("--metrics/--no-metrics", default=False, help="Enable metrics server")
def crawl(batch_size: int | None, mock: bool, metrics: bool) -> None:
    """Run one crawl pass over unparsed sources.

    Exit code is 0 when the pass completes, 2 when it ends early (no account
    left or stopped) and 1 when no account could connect at all or no
    client factory is configured. Pass --mock to crawl the synthetic graph.
    """
    from channel_discovery.accounts.pool import AccountPool
    from channel_discovery.accounts.repository import AccountFloodWaitRepository
    from channel_discovery.crawler.config import CrawlerConfig
    from channel_discovery.crawler.engine import CrawlEngine
    from channel_discovery.discovery.repository import DiscoveryQueue
    from channel_discovery.storage.database import Database

    settings = get_settings()
    accounts = _load_configured_accounts(settings)
    if not accounts:
        click.echo(
            f"No accounts configured (expected SESSION_STRING_{settings.accounts_prefix}_* entries)",
            err=True,
        )
        sys.exit(EXIT_NO_ACCOUNT)

    factory = _create_client_factory(settings, mock)

    async def run() -> int:
        bind_context(run_id=uuid.uuid4().hex[:8])
        config = CrawlerConfig()

        if metrics:
            get_metrics().start_server()

        db = Database()
        await db.connect()

        pool = AccountPool(
            accounts,
            factory,
            config=config,
            flood_wait_repo=AccountFloodWaitRepository(db),
        )
        engine = CrawlEngine(DiscoveryQueue(db), pool, config=config)

        # Handle shutdown signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, engine.stop)

        try:
            await pool.restore()
            if await pool.connect_first_available() is None:
                click.echo("No account could be connected", err=True)
                return EXIT_NO_ACCOUNT

            progress = await engine.run(batch_size)
        finally:
            await pool.disconnect_all()
            await db.close()

        click.echo("\nCrawl Summary:")
        click.echo("-" * 40)
        for key, value in progress.summary().items():
            click.echo(f"  {key}: {value}")
        click.echo("-" * 40)

        if progress.partial:
            click.echo(click.style("Pass ended early", fg="yellow"))
            return EXIT_PARTIAL
        click.echo(click.style("Pass complete", fg="green"))
        return EXIT_OK

    sys.exit(asyncio.run(run()))


@main.command()
def stats() -> None:
    """Show discovery queue statistics."""
    from channel_discovery.discovery.repository import DiscoveryQueue
    from channel_discovery.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        try:
            queue_stats = await DiscoveryQueue(db).get_stats()
        finally:
            await db.close()

        click.echo("\nDiscovery Queue:")
        click.echo("-" * 40)
        for key, value in queue_stats.to_dict().items():
            click.echo(f"  {key}: {value}")

    asyncio.run(run())


@main.command()
def accounts() -> None:
    """List configured accounts with their rate-limit state."""
    from channel_discovery.accounts.repository import AccountFloodWaitRepository
    from channel_discovery.crawler.classifier import format_wait_time
    from channel_discovery.storage.database import Database

    settings = get_settings()
    configured = _load_configured_accounts(settings)
    if not configured:
        click.echo(f"No accounts configured (prefix {settings.accounts_prefix})")
        return

    async def run():
        db = Database()
        await db.connect()

        try:
            waits = {
                r.account_name: r
                for r in await AccountFloodWaitRepository(db).get_active_flood_waits()
            }
        finally:
            await db.close()

        now = datetime.now(timezone.utc)
        click.echo(f"\nAccounts ({len(configured)}):")
        click.echo("-" * 40)
        for account in configured:
            record = waits.get(account.name)
            if record is None:
                click.echo(click.style(f"  ✓ {account.name} ({account.session_key}): available", fg="green"))
            else:
                remaining = format_wait_time((record.unlock_at - now).total_seconds())
                click.echo(click.style(
                    f"  ✗ {account.name} ({account.session_key}): rate limited for {remaining}"
                    f" ({record.reason or 'unknown'})",
                    fg="yellow",
                ))

    asyncio.run(run())


@main.command("flood-waits")
@click.option("--cleanup", is_flag=True, help="Delete expired rows first")
def flood_waits(cleanup: bool) -> None:
    """Show active account rate-limit windows."""
    from channel_discovery.accounts.repository import AccountFloodWaitRepository
    from channel_discovery.crawler.classifier import format_wait_time
    from channel_discovery.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        try:
            repo = AccountFloodWaitRepository(db)
            if cleanup:
                removed = await repo.cleanup_expired()
                click.echo(f"Removed {removed} expired rows")
            records = await repo.get_active_flood_waits()
        finally:
            await db.close()

        if not records:
            click.echo("No active rate-limit windows")
            return

        now = datetime.now(timezone.utc)
        click.echo(f"\nActive rate-limit windows ({len(records)}):")
        click.echo("-" * 40)
        for record in records:
            remaining = format_wait_time((record.unlock_at - now).total_seconds())
            click.echo(
                f"  {record.account_name}: unlocks {record.unlock_at.isoformat()}"
                f" (in {remaining}, {record.reason or 'unknown'})"
            )

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of all dependencies."""

    async def check():
        results: dict[str, bool] = {}
        settings = get_settings()

        # Check PostgreSQL
        try:
            from channel_discovery.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            await db.close()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        # Check configuration
        results["accounts_configured"] = bool(_load_configured_accounts(settings))
        results["api_configured"] = settings.api_configured
        results["client_factory_configured"] = bool(settings.client_factory)

        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
            if name in ("postgres", "accounts_configured") and not status:
                all_healthy = False

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


if __name__ == "__main__":
    main()
