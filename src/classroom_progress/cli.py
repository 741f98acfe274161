"""Command-line interface for the classroom progress core."""

import asyncio
import json
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

app = typer.Typer(
    name="classroom-progress",
    help="Classroom progress core - class average aggregation and change propagation",
    add_completion=False,
)

console = Console()


def setup_logging(level: Optional[str] = None) -> None:
    """Setup logging configuration."""
    if level is None:
        from .config import get_settings
        level = get_settings().app.log_level

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(name)s - %(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


@app.command()
def version():
    """Show version information."""
    from classroom_progress import __version__

    console.print(Panel.fit(
        f"[bold blue]Classroom Progress Core[/bold blue]\n"
        f"Version: [green]{__version__}[/green]",
        title="Version Info"
    ))


@app.command("check-db")
def check_db():
    """Test database connectivity."""
    from database import close_database_pool, get_database_pool

    async def run() -> bool:
        try:
            pool = await get_database_pool()
            return await pool.health_check()
        finally:
            await close_database_pool()

    console.print("[yellow]Testing database connection...[/yellow]")
    try:
        healthy = asyncio.run(run())
    except Exception as e:
        console.print(f"[red]❌ Database connection failed: {e}[/red]")
        raise typer.Exit(code=1)

    if not healthy:
        console.print("[red]❌ Database health check failed[/red]")
        raise typer.Exit(code=1)
    console.print("[green]✅ Database connection successful![/green]")


@app.command("install-schema")
def install_schema(
    triggers_only: bool = typer.Option(
        False, "--triggers-only", help="Only (re)install the change notification triggers"
    )
):
    """Create the progress tables and change notification triggers."""
    from database import close_database_pool, get_database_pool
    from database.schema import install_schema as install

    async def run() -> None:
        try:
            pool = await get_database_pool()
            await install(pool, include_tables=not triggers_only)
        finally:
            await close_database_pool()

    setup_logging()
    asyncio.run(run())
    console.print("[green]✅ Schema installed[/green]")


@app.command()
def recompute(
    school: Optional[str] = typer.Option(None, "--school", "-s", help="Only recompute this school"),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON"),
    strict: bool = typer.Option(False, "--strict", help="Exit non-zero if any pair failed"),
):
    """Recompute class averages directly against the database."""
    from aggregation import AggregationSetupError, AggregatorConfig, ClassAverageAggregator
    from database import ProgressQueries, close_database_pool, get_database_pool
    from .config import get_settings

    settings = get_settings()
    setup_logging(settings.app.log_level)

    async def run():
        try:
            pool = await get_database_pool()
            aggregator = ClassAverageAggregator(
                ProgressQueries(pool),
                AggregatorConfig(**settings.aggregation.model_dump()),
            )
            return await aggregator.recompute(school)
        finally:
            await close_database_pool()

    try:
        result = asyncio.run(run())
    except AggregationSetupError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(result.model_dump_json())
    else:
        table = Table(title=result.message)
        table.add_column("Class")
        table.add_column("Subject")
        table.add_column("Average", justify="right")
        table.add_column("Entries", justify="right")
        for average in result.results:
            table.add_row(
                average.class_id, average.subject_id,
                f"{average.average_grade:.2f}", str(average.entry_count),
            )
        console.print(table)

        for failure in result.failures:
            console.print(f"[red]✗ class {failure.class_id}, subject {failure.subject_id}: {failure.cause}[/red]")

    if strict and result.failures:
        raise typer.Exit(code=1)


@app.command()
def trigger(
    url: str = typer.Option(..., "--url", "-u", help="Aggregation endpoint URL"),
    school: Optional[str] = typer.Option(None, "--school", "-s", help="Only recompute this school"),
    token: Optional[str] = typer.Option(None, "--token", help="Bearer token for the endpoint"),
    timeout: float = typer.Option(120.0, "--timeout", help="Request timeout in seconds"),
):
    """Call a deployed aggregation endpoint."""
    from .remote import TriggerError, trigger_remote

    try:
        payload = asyncio.run(trigger_remote(url, school_id=school, token=token, timeout=timeout))
    except TriggerError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]✅ {payload.get('message', 'done')}[/green]")
    console.print_json(json.dumps(payload.get("results", [])))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn
    from .config import get_settings

    settings = get_settings()
    setup_logging(settings.app.log_level)
    uvicorn.run(
        "classroom_progress.api:create_app",
        factory=True,
        host=host or settings.app.host,
        port=port or settings.app.port,
        log_level=settings.app.log_level.lower(),
    )


@app.command()
def listen(
    class_id: Optional[str] = typer.Option(None, "--class-id", "-c", help="Only events for this class"),
):
    """Print cache invalidations caused by live changes until interrupted."""
    from database import RegionCache, CLASS_AVERAGES_REGION, PROGRESS_REGION, create_pool_config
    from realtime import CacheInvalidationBroker, ChangeFeedListener, PostgresNotifyTransport, Topic
    from utils.retry import RetryPolicy
    from .config import get_settings

    settings = get_settings()
    setup_logging(settings.app.log_level)
    feed = settings.feed

    async def run() -> None:
        cache = RegionCache()
        for region in (PROGRESS_REGION, CLASS_AVERAGES_REGION):
            cache.observe(region, lambda name: console.print(f"[cyan]invalidated[/cyan] {name}"))

        listener = ChangeFeedListener(
            PostgresNotifyTransport(create_pool_config(settings.database).dsn, feed.connect_timeout),
            CacheInvalidationBroker(cache),
            retry_policy=RetryPolicy(
                max_retries=feed.max_reconnect_attempts,
                retry_delay=feed.reconnect_delay,
                max_delay=feed.max_reconnect_delay,
                timeout=feed.connect_timeout,
            ),
            on_degraded=lambda cause: console.print(f"[red]Change feed degraded: {cause}[/red]"),
        )
        listener.subscribe(Topic.PROGRESS_ENTRIES, class_id=class_id or feed.class_id)
        listener.subscribe(Topic.CLASS_AVERAGES, class_id=class_id or feed.class_id)

        async with listener:
            await listener.wait()
        await cache.close()

    console.print("[yellow]Listening for progress changes (Ctrl-C to stop)...[/yellow]")
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
