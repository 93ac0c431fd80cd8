#!/usr/bin/env python3
"""
FeedPulse - Feed Ingestion Daemon
=================================

Main application entry point with CLI interface for the daemon and for
subscription management.

Usage:
    python main.py --help                       # Show all commands
    python main.py check-config                 # Validate configuration
    python main.py init-db                      # Initialize database
    python main.py subscribe URL                # Add a feed
    python main.py list                         # Show subscriptions
    python main.py poll-once                    # Poll every feed once
    python main.py run                          # Run the polling daemon
"""

import sys
import asyncio
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent))

from feedpulse.config.settings import FeedPulseSettings, get_settings
from feedpulse.database.connection import DatabaseConnection
from feedpulse.database.schema import DatabaseSchema
from feedpulse.delivery.factory import build_event_sink
from feedpulse.ingestion.fetcher import FeedFetcher
from feedpulse.scheduler.poll_scheduler import CycleStatus, PollScheduler
from feedpulse.services.subscription_service import SubscriptionService
from feedpulse.storage.feed_store import FeedStore
from feedpulse.utils.exceptions import FeedPulseError, get_user_friendly_message
from feedpulse.utils.logging import configure_application_logging, get_logger_for_component
from feedpulse.utils.validators import validate_file_path

console = Console()


@dataclass
class Components:
    """Wired application objects for one CLI invocation."""
    settings: FeedPulseSettings
    db: DatabaseConnection
    store: FeedStore
    fetcher: FeedFetcher
    scheduler: PollScheduler
    service: SubscriptionService


def _build_components(ctx) -> Components:
    settings = ctx.obj["settings"]
    db_path = ctx.obj["db_path"]

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    DatabaseSchema(db_path).create_tables()

    db = DatabaseConnection(db_path, pool_size=settings.database.pool_size)
    store = FeedStore(
        db, refresh_items_on_reobservation=settings.store.refresh_items_on_reobservation
    )
    fetcher = FeedFetcher(settings.fetch)
    scheduler = PollScheduler(store, fetcher, build_event_sink(settings), settings.polling)
    service = SubscriptionService(store, fetcher, scheduler, settings.fetch)
    return Components(settings, db, store, fetcher, scheduler, service)


def _fail(error: Exception) -> None:
    console.print(f"[bold red]❌ {get_user_friendly_message(error)}[/bold red]")
    if isinstance(error, FeedPulseError) and error.error_code:
        console.print(f"[dim]{error}[/dim]")
    sys.exit(1)


@click.group(invoke_without_command=True)
@click.option('--db', 'db_path', help='SQLite database path (overrides config)')
@click.option('--debug', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, db_path, debug):
    """FeedPulse - RSS/Atom feed ingestion daemon."""
    ctx.ensure_object(dict)

    try:
        settings = get_settings()
    except FeedPulseError as e:
        _fail(e)

    configure_application_logging(
        log_level="DEBUG" if debug else settings.get_effective_log_level(),
        log_file=settings.logging.file_path,
        enable_console=settings.logging.console_logging,
        structured_logging=settings.logging.structured_logging,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )

    ctx.obj['settings'] = settings
    ctx.obj['db_path'] = db_path or settings.database.path

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.pass_context
def check_config(ctx):
    """Validate configuration and environment variables."""
    settings = ctx.obj['settings']

    table = Table(title="FeedPulse Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Database", ctx.obj['db_path'])
    table.add_row("Sink", settings.delivery.sink.value)
    table.add_row("Workers", str(settings.polling.workers))
    table.add_row("Default interval", f"{settings.polling.default_interval_minutes} min")
    table.add_row("Minimum interval", f"{settings.polling.min_interval_minutes} min")
    table.add_row(
        "Backoff",
        f"{settings.polling.backoff_base_seconds:.0f}s .. {settings.polling.backoff_max_seconds:.0f}s",
    )
    table.add_row("Request timeout", f"{settings.fetch.request_timeout:.0f}s")
    table.add_row("User agent", settings.fetch.user_agent)

    console.print(table)
    console.print("[bold green]✅ Configuration is valid[/bold green]")


@cli.command()
@click.pass_context
def init_db(ctx):
    """Initialize database with schema."""
    db_path = ctx.obj['db_path']
    try:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        schema = DatabaseSchema(db_path)
        schema.create_tables()
        if not schema.verify_schema():
            console.print("[bold red]❌ Database schema verification failed[/bold red]")
            sys.exit(1)

        db = DatabaseConnection(db_path, pool_size=1)
        info = db.get_database_info()
        db.close_all_connections()
        console.print(
            f"[bold green]✅ Database ready at {db_path} "
            f"({info['database_size_mb']:.2f} MB)[/bold green]"
        )
    except FeedPulseError as e:
        _fail(e)


@cli.command()
@click.argument('url')
@click.option('--category', help='Grouping label for the feed')
@click.pass_context
def subscribe(ctx, url, category):
    """Subscribe to an RSS or Atom feed."""
    components = _build_components(ctx)
    try:
        descriptor = asyncio.run(components.service.subscribe(url, category=category))
    except FeedPulseError as e:
        _fail(e)

    console.print(
        f"[bold green]✅ Subscribed to {descriptor.display_title} "
        f"(#{descriptor.id}, {descriptor.format.value})[/bold green]"
    )


@cli.command()
@click.argument('feed_id', type=int)
@click.pass_context
def unsubscribe(ctx, feed_id):
    """Remove a feed and its stored items."""
    components = _build_components(ctx)
    try:
        descriptor = asyncio.run(components.service.unsubscribe(feed_id))
    except FeedPulseError as e:
        _fail(e)

    console.print(f"[yellow]Unsubscribed from {descriptor.display_title}[/yellow]")


@cli.command(name='list')
@click.pass_context
def list_feeds(ctx):
    """Show subscribed feeds."""
    components = _build_components(ctx)
    feeds = components.service.list_feeds()
    if not feeds:
        console.print("[yellow]No feeds subscribed[/yellow]")
        return

    table = Table(title=f"Subscriptions ({len(feeds)})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Title", style="green")
    table.add_column("Format")
    table.add_column("Category")
    table.add_column("Items", justify="right")
    table.add_column("Last success")
    table.add_column("URL", style="dim")

    for feed in feeds:
        table.add_row(
            str(feed.id),
            feed.display_title,
            feed.format.value,
            feed.category or "",
            str(components.store.count_items(feed.id)),
            feed.last_success_at.strftime("%Y-%m-%d %H:%M") if feed.last_success_at else "never",
            feed.url,
        )
    console.print(table)


@cli.command()
@click.argument('feed_id', type=int)
@click.option('--limit', default=20, help='Number of items to show (default: 20)')
@click.pass_context
def items(ctx, feed_id, limit):
    """Show the most recently discovered items of a feed."""
    components = _build_components(ctx)
    stored = components.store.list_items(feed_id, limit=limit)
    if not stored:
        console.print(f"[yellow]No items stored for feed {feed_id}[/yellow]")
        return

    table = Table(title=f"Items of feed {feed_id}")
    table.add_column("Published")
    table.add_column("Title", style="green")
    table.add_column("Link", style="dim")
    for item in stored:
        table.add_row(
            item.timestamp.strftime("%Y-%m-%d %H:%M") if item.timestamp else "",
            item.title or item.natural_key,
            item.link or "",
        )
    console.print(table)


@cli.command()
@click.argument('feed_id', type=int)
@click.option('--title', help='Title override ("" clears it)')
@click.option('--category', help='Grouping label ("" clears it)')
@click.option('--url', help='New feed URL')
@click.pass_context
def edit(ctx, feed_id, title, category, url):
    """Change a feed's title override, category or URL."""
    components = _build_components(ctx)
    try:
        descriptor = asyncio.run(
            components.service.edit_feed(feed_id, title=title, category=category, url=url)
        )
    except FeedPulseError as e:
        _fail(e)

    console.print(f"[bold green]✅ Updated feed #{descriptor.id}: {descriptor.display_title}[/bold green]")


@cli.command()
@click.argument('file')
@click.pass_context
def import_opml(ctx, file):
    """Subscribe to every feed of an OPML file."""
    components = _build_components(ctx)
    try:
        path = validate_file_path(file, must_exist=True)
        report = asyncio.run(components.service.import_opml(path.read_bytes()))
    except FeedPulseError as e:
        _fail(e)

    console.print(
        f"[bold green]✅ {len(report.subscribed)} subscribed[/bold green], "
        f"[yellow]{len(report.skipped)} already present[/yellow], "
        f"[red]{len(report.failed)} failed[/red]"
    )
    for url, error in report.failed.items():
        console.print(f"  [red]✗[/red] {url}: {error}")


@cli.command()
@click.argument('file')
@click.option('--title', default='FeedPulse Subscriptions', help='OPML document title')
@click.pass_context
def export_opml(ctx, file, title):
    """Write all subscriptions to an OPML file."""
    components = _build_components(ctx)
    try:
        path = validate_file_path(file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(components.service.export_opml(title=title))
    except FeedPulseError as e:
        _fail(e)

    console.print(f"[bold green]✅ Exported subscriptions to {path}[/bold green]")


@cli.command()
@click.option('--feed-id', type=int, help='Poll only this feed')
@click.pass_context
def poll_once(ctx, feed_id):
    """Poll feeds once and exit."""
    components = _build_components(ctx)

    async def _poll():
        scheduler = components.scheduler
        await scheduler.load_from_store()
        scheduler.trigger(feed_id)
        await scheduler.sink.start()
        try:
            if feed_id is not None:
                return [await scheduler.poll_feed(feed_id)]
            return await scheduler.run_once()
        finally:
            await scheduler.sink.close()

    try:
        outcomes = asyncio.run(_poll())
    except FeedPulseError as e:
        _fail(e)

    table = Table(title="Poll results")
    table.add_column("Feed", style="cyan", justify="right")
    table.add_column("Status")
    table.add_column("New items", justify="right")
    table.add_column("Error", style="red")
    for outcome in outcomes:
        style = "green" if outcome.status in (CycleStatus.SUCCESS, CycleStatus.NOT_MODIFIED) else "yellow"
        table.add_row(
            str(outcome.feed_id),
            f"[{style}]{outcome.status.value}[/{style}]",
            str(outcome.new_items),
            outcome.error or "",
        )
    console.print(table)


@cli.command()
@click.pass_context
def run(ctx):
    """Run the polling daemon until SIGINT/SIGTERM."""
    components = _build_components(ctx)
    logger = get_logger_for_component("daemon")

    async def _run():
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers
                pass

        await components.scheduler.load_from_store()
        await components.scheduler.run(stop_event)

    logger.info(f"Starting {components.settings.app_name} {components.settings.version}")
    try:
        asyncio.run(_run())
    except FeedPulseError as e:
        _fail(e)
    finally:
        components.db.close_all_connections()
    logger.info("Daemon stopped")


if __name__ == "__main__":
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n[yellow]👋 FeedPulse interrupted by user[/yellow]")
        sys.exit(130)
