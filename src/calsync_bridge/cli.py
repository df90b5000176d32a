"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import Base, DatabaseManager
from .exceptions import CalSyncError
from .models import SweepReport, SyncReport, utc_now
from .runtime import SyncRuntime

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging over the standard library handlers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _runtime(ctx) -> SyncRuntime:
    # CLI writes are pushed explicitly, not from a background loop
    return SyncRuntime(ctx.obj['settings'], auto_push=False)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """CalSync Bridge - keeps a local event store in step with Google Calendar.

    Incremental sync with sync tokens, push-notification triggered updates,
    recurring event expansion and loop-free two-way writes.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        if ctx.invoked_subcommand == 'config':
            # Creating a config file must work before one exists
            ctx.obj['settings'] = None
            ctx.obj['settings_error'] = e
            return
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with the background sweep loop (container friendly)."""
    import uvicorn
    from .server import create_app

    try:
        uvicorn.run(create_app(ctx.obj['settings']), host=host, port=port)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    console.print(f"[green]✓ Database ready at {ctx.obj['settings'].database_url}[/green]")


@cli.command()
@click.argument('user_id')
@click.option('--origin', help='Frontend origin to return to after consent')
@click.pass_context
def connect(ctx, user_id, origin):
    """Print the consent URL that connects USER_ID's calendar."""
    runtime = _runtime(ctx)
    console.print(runtime.oauth.authorization_url(user_id, origin))


@cli.command()
@click.argument('user_id')
@click.option('--respect-cooldown', is_flag=True,
              help='Apply the manual-sync cooldown like the HTTP endpoint does')
@async_command
async def sync(ctx, user_id, respect_cooldown):
    """Synchronize one user's calendar now."""
    settings = ctx.obj['settings']
    runtime = _runtime(ctx)

    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task(f"Synchronizing {user_id}...", total=None)
            if respect_cooldown:
                report = await runtime.connections.manual_sync(user_id)
            else:
                connection = runtime.connections.require_connection(user_id)
                report = await runtime.engine.perform_sync(connection)
        _display_sync_report(report)
    except CalSyncError as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)
    finally:
        await runtime.service.close()


@cli.command()
@async_command
async def sweep(ctx):
    """Run one scheduled sweep over all connected users."""
    runtime = _runtime(ctx)
    try:
        report = await runtime.scheduler.sweep()
        _display_sweep_report(report)
    finally:
        await runtime.service.close()


@cli.command()
@click.pass_context
def status(ctx):
    """Show connections, cursors and channel expirations."""
    runtime = _runtime(ctx)
    connections = runtime.store.list_connected()

    if not connections:
        console.print("[yellow]No connected users[/yellow]")
        return

    table = Table(title="Connected Calendars")
    table.add_column("User", style="cyan")
    table.add_column("Email")
    table.add_column("Cursor", justify="center")
    table.add_column("Last Sync")
    table.add_column("Channel Expires")
    table.add_column("Refresh Failures", justify="right")

    for connection in connections:
        webhook = connection.webhook
        table.add_row(
            connection.user_id,
            connection.connected_email or "-",
            "✅" if connection.sync_token else "❌",
            connection.last_sync_at.strftime('%Y-%m-%d %H:%M:%S') if connection.last_sync_at else "never",
            webhook.expiration.strftime('%Y-%m-%d %H:%M') if webhook and webhook.expiration else "-",
            str(connection.failed_refresh_count),
        )

    console.print(table)


@cli.command()
@click.argument('user_id')
@click.option('--days', '-d', default=14, type=int, help='Number of days to list from now')
@click.pass_context
def events(ctx, user_id, days):
    """List USER_ID's events (recurring ones expanded) for the coming days."""
    runtime = _runtime(ctx)
    start = utc_now()
    occurrences = runtime.connections.list_window(user_id, start, start + timedelta(days=days))

    table = Table(title=f"Events for {user_id} (next {days} days)")
    table.add_column("Start", style="cyan")
    table.add_column("End")
    table.add_column("Title")
    table.add_column("Recurring", justify="center")
    table.add_column("Remote ID", style="dim")

    for occurrence in occurrences:
        table.add_row(
            occurrence.start.strftime('%Y-%m-%d %H:%M %z'),
            occurrence.end.strftime('%H:%M'),
            occurrence.title,
            "🔁" if occurrence.is_virtual else "",
            occurrence.external_id or "-",
        )

    console.print(table)


@cli.command()
@click.argument('user_id')
@click.option('--remove-events', is_flag=True, help='Also delete events imported from the remote calendar')
@click.confirmation_option(prompt='Disconnect this calendar?')
@async_command
async def disconnect(ctx, user_id, remove_events):
    """Disconnect USER_ID's calendar."""
    runtime = _runtime(ctx)
    try:
        result = await runtime.connections.disconnect(user_id, remove_events=remove_events)
        console.print(f"[green]✓ Disconnected {user_id}[/green] ({result['events_removed']} events removed)")
    except CalSyncError as e:
        console.print(f"[red]Disconnect failed: {e}[/red]")
        sys.exit(1)
    finally:
        await runtime.service.close()


@cli.group()
def config():
    """Create or check the .env configuration."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Write a .env template with every supported setting."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Left existing file untouched[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Template written to {path}[/green]")
        console.print("Fill in the OAuth client and PUBLIC_BASE_URL before running serve.")
    except OSError as e:
        console.print(f"[red]Could not write {path}: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Check that the bridge can serve users with the loaded settings."""
    settings = ctx.obj['settings']
    if settings is None:
        console.print(f"[red]Error loading configuration: {ctx.obj['settings_error']}[/red]")
        sys.exit(1)

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            "[red]Settings to fix:[/red]\n" + "\n".join(f"- {field}" for field in missing_fields),
            title="calsync-bridge settings",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ Ready to serve: OAuth client and public https base URL are set[/green]",
            title="calsync-bridge settings",
            border_style="green"
        ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to reset all connections and events?')
@click.pass_context
def reset(ctx):
    """Drop and recreate all tables."""
    db_manager = DatabaseManager(ctx.obj['settings'])
    Base.metadata.drop_all(bind=db_manager.engine)
    Base.metadata.create_all(bind=db_manager.engine)
    console.print("[green]✓ All data has been reset[/green]")
    console.print("[yellow]⚠️  Users must reconnect their calendars[/yellow]")


def _display_sync_report(report: SyncReport) -> None:
    table = Table(title=f"Sync Results ({report.mode.value if report.mode else 'n/a'})")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")

    table.add_row("Imported", str(report.imported))
    table.add_row("Updated", str(report.updated))
    table.add_row("Deleted", str(report.deleted))
    table.add_row("Unchanged", str(report.unchanged))
    table.add_row("Skipped (all-day)", str(report.skipped))
    table.add_row("Pages", str(report.pages))
    console.print(table)

    if report.fallback_used:
        console.print("[yellow]⚠️  Sync token was rejected; a full resync was performed[/yellow]")

    if report.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in report.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def _display_sweep_report(report: SweepReport) -> None:
    table = Table(title="Sweep Results")
    table.add_column("Total", justify="right")
    table.add_column("Synced", justify="right", style="green")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Errors", justify="right", style="red")
    table.add_row(str(report.total), str(report.synced), str(report.skipped), str(report.errors))
    console.print(table)

    for user_id, error in report.failures.items():
        console.print(f"[red]❌ {user_id}: {error}[/red]")


def main():
    """Main entry point."""
    cli()


if __name__ == '__main__':
    main()
