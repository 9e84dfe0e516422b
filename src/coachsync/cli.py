"""Operator command-line interface."""

import asyncio
import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
import structlog

from .config import Settings, create_example_config, load_settings
from .database import DatabaseManager

console = Console()
logger = structlog.get_logger()


def setup_logging(settings: Settings) -> None:
    """Set up stdlib logging for the modules and structlog for the CLI."""
    logging.basicConfig(level=getattr(logging, settings.log_level), format=settings.log_format)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer()
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


def _runtime(settings: Settings):
    from .server import SyncRuntime
    return SyncRuntime(settings)


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, 'strftime'):
        return value.strftime('%Y-%m-%d %H:%M')
    return str(getattr(value, 'value', value))


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """coachsync - calendar sync queue and appointment reminders."""
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create the database tables."""
    settings = ctx.obj['settings']
    try:
        DatabaseManager(settings).init_db()
    except Exception as e:
        console.print(f"[red]Failed to initialize database: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Database ready at {settings.database_url}[/green]")


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
@click.pass_context
def serve(ctx, host, port):
    """Run HTTP server with the background sync and reminder loops."""
    try:
        import uvicorn
        from .server import app
        app.state.settings = ctx.obj['settings']
        uvicorn.run(app, host=host, port=port)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@async_command
async def worker(ctx):
    """Run the sync and reminder loops without the HTTP server."""
    settings = ctx.obj['settings']
    runtime = _runtime(settings)
    console.print(
        f"[green]Starting coachsync worker[/green] - poll every {settings.sync_poll_seconds}s, "
        f"reminders every {settings.reminder_interval_minutes} min"
    )
    logger.info("worker_started", poll_seconds=settings.sync_poll_seconds)
    runtime.start()
    try:
        await asyncio.gather(*runtime.tasks)
    except asyncio.CancelledError:
        pass
    finally:
        await runtime.stop()
        console.print("\n[yellow]Worker stopped[/yellow]")


@cli.command('process-jobs')
@click.option('--max', 'max_jobs', default=50, type=int, help='Maximum number of jobs to run')
@async_command
async def process_jobs(ctx, max_jobs):
    """Run due sync jobs once and exit."""
    runtime = _runtime(ctx.obj['settings'])
    async with runtime.engine as engine:
        claimed = await engine.process_jobs(max_jobs)
        counts = engine.queue.count_by_status()

    console.print(f"Processed [bold]{claimed}[/bold] job(s)")
    _display_counts(counts)


@cli.command()
@click.option('--connection-id', type=click.UUID, help='Only show jobs of one connection')
@click.option('--limit', '-n', default=20, type=int, help='Number of jobs to show')
@click.pass_context
def queue(ctx, connection_id, limit):
    """Show recent sync jobs."""
    from .sync_queue import SyncQueue

    settings = ctx.obj['settings']
    db_manager = DatabaseManager(settings)
    db_manager.init_db()
    sync_queue = SyncQueue(settings, db_manager)
    jobs = sync_queue.get_recent_jobs(connection_id, limit)

    table = Table(title="Recent Sync Jobs")
    table.add_column("ID", style="dim")
    table.add_column("Operation", style="cyan")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Scheduled")
    table.add_column("Error", style="red")

    colors = {'completed': 'green', 'failed': 'red', 'processing': 'yellow', 'pending': 'blue'}
    for job in jobs:
        color = colors.get(job.status.value, 'white')
        table.add_row(
            str(job.id)[:8],
            job.operation.value,
            f"[{color}]{job.status.value}[/{color}]",
            str(job.priority),
            f"{job.attempts}/{job.max_attempts}",
            _fmt(job.scheduled_for),
            (job.error_message or '')[:60],
        )
    console.print(table)
    _display_counts(sync_queue.count_by_status())


def _display_counts(counts: dict) -> None:
    summary = "  ".join(f"{status}: {count}" for status, count in counts.items())
    console.print(f"[dim]Queue: {summary}[/dim]")


@cli.group()
def reminders():
    """Reminder sweeps."""
    pass


@reminders.command('process')
@async_command
async def reminders_process(ctx):
    """Send every reminder that is due."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    result = await runtime.reminders.process_due_reminders()
    console.print(
        f"Processed {result.processed} reminder(s): "
        f"[green]{result.sent} sent[/green], [red]{result.failed} failed[/red]"
    )


@reminders.command('check')
@async_command
async def reminders_check(ctx):
    """Send immediate reminders for sessions starting within the hour."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    count = await runtime.reminders.check_upcoming_sessions()
    console.print(f"Sent immediate reminders for {count} session(s)")


@reminders.command('cleanup')
@click.option('--days', type=int, help='Retention in days (default from settings)')
@click.pass_context
def reminders_cleanup(ctx, days):
    """Delete old reminder rows."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    deleted = runtime.reminders.cleanup_old_reminders(days)
    console.print(f"Deleted {deleted} old reminder(s)")


@cli.group()
def cleanup():
    """Reconciliation sweeps."""
    pass


@cleanup.command('duplicates')
@click.option('--coach-id', type=click.UUID, help='Only clean up one coach')
@async_command
async def cleanup_duplicates(ctx, coach_id):
    """Remove duplicate external events, keeping the oldest per calendar."""
    runtime = _runtime(ctx.obj['settings'])
    async with runtime.engine:
        removed = await runtime.reconciler.cleanup_all_duplicate_events(coach_id)
    console.print(f"[green]Removed {removed} duplicate event(s)[/green]")


@cleanup.command('failed-jobs')
@click.pass_context
def cleanup_failed_jobs(ctx):
    """Fail repeatedly failing jobs whose session was deleted."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    cleaned = runtime.reconciler.cleanup_failed_sync_jobs()
    console.print(f"[green]Marked {cleaned} orphaned job(s) as failed[/green]")


@cleanup.command('stale-jobs')
@click.pass_context
def cleanup_stale_jobs(ctx):
    """Requeue jobs left in processing by a crashed worker."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    released = runtime.queue.release_stale_jobs()
    console.print(f"[green]Requeued {released} stale job(s)[/green]")


@cli.command()
@click.argument('coach_id', type=click.UUID)
@click.pass_context
def connections(ctx, coach_id):
    """List a coach's calendar connections."""
    runtime = _runtime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    items = runtime.calendar_manager.list_connections(coach_id)
    if not items:
        console.print("[yellow]No calendar connections[/yellow]")
        return

    table = Table(title=f"Calendar Connections for {coach_id}")
    table.add_column("ID", style="dim")
    table.add_column("Provider", style="cyan")
    table.add_column("Calendar")
    table.add_column("Timezone")
    table.add_column("Active")
    table.add_column("Sync")
    table.add_column("Last Sync")
    table.add_column("Status")

    for connection in items:
        status = _fmt(connection.last_sync_status)
        if connection.last_sync_error:
            status = f"[red]{status}[/red]: {connection.last_sync_error[:40]}"
        table.add_row(
            str(connection.id)[:8],
            connection.provider.value,
            connection.calendar_name or '-',
            connection.calendar_timezone or '-',
            "✓" if connection.is_active else "✗",
            "✓" if connection.is_sync_enabled else "✗",
            _fmt(connection.last_sync_at),
            status,
        )
    console.print(table)


@cli.group()
def config():
    """Manage the .env configuration."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Where to write the example .env')
@click.option('--force', '-f', is_flag=True,
              help='Replace an existing file without asking')
def create_config(path, force):
    """Write an example .env with every provider, SMTP and worker setting."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"{path} exists. Replace it?"):
            console.print("[yellow]Left existing configuration untouched[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Wrote example configuration to {path}[/green]")
        console.print("Fill in the OAuth client credentials and SMTP server before starting the worker.")
    except OSError as e:
        console.print(f"[red]Could not write {path}: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Check that at least one provider and email delivery are configured."""
    settings = ctx.obj['settings']

    missing = settings.validate_required_settings()
    if missing:
        console.print(Panel(
            "[red]Missing settings:[/red]\n" + "\n".join(f"• {name}" for name in missing),
            title="coachsync configuration",
            border_style="red"
        ))
        sys.exit(1)

    providers = [name for name, ok in (
        ('google', settings.google_configured),
        ('outlook', settings.outlook_configured),
    ) if ok]
    console.print(Panel(
        f"[green]✓ Configuration complete[/green]\nProviders: {', '.join(providers)}",
        title="coachsync configuration",
        border_style="green"
    ))


def main():
    """Console script entry point."""
    cli()


if __name__ == '__main__':
    main()
