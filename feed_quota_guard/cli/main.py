"""
CLI interface for Feed Quota Guard.

Operator commands for inspecting quota, schedules and learned suggestions,
and for running the polling loop.
"""

import logging
import signal
import sys
import threading
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from feed_quota_guard.config.loader import AppConfig, load_config
from feed_quota_guard.core.orchestrator import ConcurrencyOrchestrator, OrchestratorContext, TickReport
from feed_quota_guard.storage.repository import StateRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "feed_quota_guard.yaml"

_STATUS_STYLES = {
    "normal": "green",
    "moderate": "yellow",
    "high": "dark_orange",
    "critical": "red",
    "locked": "bold red",
}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: str = typer.Option(
        DEFAULT_CONFIG_PATH,
        "--config",
        "-c",
        envvar="FEED_QUOTA_GUARD_CONFIG",
        help="Path to the YAML configuration file"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    ),
):
    """Feed Quota Guard CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("Feed Quota Guard - Use --help to see available commands")


def _load(ctx: typer.Context) -> AppConfig:
    path = ctx.obj["config_path"]
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def init(
    ctx: typer.Context,
    seed_schedules: bool = typer.Option(
        False,
        "--seed-schedules",
        help="Copy schedules from the configuration file into the database"
    ),
):
    """Initialize the Feed Quota Guard database."""
    config = _load(ctx)
    try:
        initialize_schema(config.storage.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        if seed_schedules:
            repository = StateRepository(config.storage.db_path)
            for schedule in config.schedules:
                repository.insert_schedule(schedule)
            console.print(f"[green]✓[/] Seeded {len(config.schedules)} schedules")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show quota usage, cache statistics and schedule states."""
    config = _load(ctx)
    with OrchestratorContext.open(config) as context:
        _display_quota(context)
        _display_cache(context)
        _display_schedule_states(context)
    sys.exit(EXIT_CODE_PASS)


@app.command("reset-quota")
def reset_quota(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Zero today's quota usage and clear any lockout."""
    config = _load(ctx)
    if not yes and not typer.confirm("Reset quota usage for the current window?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)
    with OrchestratorContext.open(config) as context:
        context.ledger.reset()
        stats = context.ledger.get_stats()
    console.print(f"[green]✓[/] Quota reset: {stats.remaining:,} of {stats.limit:,} units available")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Run a single tick and exit"),
):
    """Run the polling loop until interrupted."""
    config = _load(ctx)
    with OrchestratorContext.open(config) as context:
        orchestrator = ConcurrencyOrchestrator(
            context,
            max_workers=config.orchestrator.max_workers,
            task_timeout=config.orchestrator.task_timeout,
            tick_interval=config.orchestrator.tick_interval,
        )
        if once:
            try:
                report = orchestrator.tick()
            finally:
                orchestrator.shutdown()
            _display_tick(report)
            sys.exit(EXIT_CODE_PASS)

        stop_event = threading.Event()
        signal.signal(signal.SIGTERM, lambda signum, frame: stop_event.set())
        console.print(
            f"Polling every {config.orchestrator.tick_interval:.0f}s with "
            f"{config.orchestrator.max_workers} workers. Press Ctrl+C to stop."
        )
        try:
            orchestrator.run_forever(stop_event)
        except KeyboardInterrupt:
            stop_event.set()
            orchestrator.shutdown()
    console.print("Stopped")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def schedules(
    ctx: typer.Context,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of upcoming checks to show"),
):
    """List upcoming checks, soonest first."""
    config = _load(ctx)
    with OrchestratorContext.open(config) as context:
        upcoming = context.scheduler.next_check_times(limit=limit)

    if not upcoming:
        console.print("\n[bold yellow]No active schedules found[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Upcoming Checks")
    table.add_column("Schedule", justify="right")
    table.add_column("Platform")
    table.add_column("Channel")
    table.add_column("Priority", justify="right")
    table.add_column("Slot")
    table.add_column("Next Run (UTC)")
    for check in upcoming:
        table.add_row(
            str(check.schedule_id),
            check.platform,
            check.channel_id,
            str(check.priority),
            check.slot.label(),
            check.at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def suggestions(
    ctx: typer.Context,
    schedule_id: Optional[int] = typer.Option(
        None,
        "--schedule",
        "-s",
        help="Only show one schedule"
    ),
):
    """Show learned effectiveness and advisory slot changes."""
    config = _load(ctx)
    with OrchestratorContext.open(config) as context:
        definitions = context.scheduler.schedules()
        if schedule_id is not None:
            definitions = [s for s in definitions if s.id == schedule_id]
            if not definitions:
                console.print(f"[red]Error:[/] Unknown schedule {schedule_id}")
                sys.exit(EXIT_CODE_FAIL)
        insights = [context.learner.insights(schedule) for schedule in definitions]

    for insight in insights:
        console.print(f"\n[bold]Schedule {insight.schedule_id}[/bold]")
        console.print(
            f"Effectiveness: {insight.effectiveness:.3f}  "
            f"Success rate: {insight.success_rate:.0%}  "
            f"Checks: {insight.total_checks}  Discoveries: {insight.total_discoveries}"
        )
        if insight.low_value:
            console.print("[yellow]Low value: nothing found in recent checks[/]")
        if insight.next_content:
            console.print(
                f"Next content expected {insight.next_content.at.strftime('%a %H:%M %Z')} "
                f"({insight.next_content.confidence:.0%} confidence)"
            )
        if not insight.suggestions:
            console.print("[dim]No suggestions[/]")
            continue
        for suggestion in insight.suggestions:
            console.print(f"  {suggestion.kind.value}: {suggestion.reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command("clear-cache")
def clear_cache(
    ctx: typer.Context,
    platform: Optional[str] = typer.Option(
        None,
        "--platform",
        "-p",
        help="Only clear entries of one platform"
    ),
):
    """Remove cached content."""
    config = _load(ctx)
    with OrchestratorContext.open(config) as context:
        if platform:
            removed = context.cache.clear_platform(platform)
        else:
            removed = context.cache.clear_all()
    console.print(f"[green]✓[/] Removed {removed} cache entries")
    sys.exit(EXIT_CODE_PASS)


def _display_quota(context: OrchestratorContext):
    """Display quota usage for the current window."""
    stats = context.ledger.get_stats()
    style = _STATUS_STYLES.get(stats.status, "white")

    console.print("\n[bold]Quota[/bold]")
    console.print("-" * 40)
    console.print(f"Used: {stats.used:,} / {stats.limit:,} ({stats.percentage:.1f}%)")
    console.print(f"Remaining: {stats.remaining:,}")
    console.print(f"Status: [{style}]{stats.status}[/]")
    console.print(f"Next reset: {stats.next_reset.isoformat()}")
    if stats.locked_until:
        console.print(f"[bold red]Locked out until {stats.locked_until.isoformat()}[/]")

    if stats.operations:
        table = Table()
        table.add_column("Operation")
        table.add_column("Calls", justify="right")
        table.add_column("Units", justify="right")
        for operation, usage in sorted(stats.operations.items()):
            table.add_row(operation, str(usage.count), str(usage.units))
        console.print(table)


def _display_cache(context: OrchestratorContext):
    """Display cache statistics."""
    stats = context.cache.stats()
    console.print("\n[bold]Cache[/bold]")
    console.print("-" * 40)
    console.print(f"Entries: {stats.entries}  Hit rate: {stats.hit_rate:.0%}")


def _display_schedule_states(context: OrchestratorContext):
    """Display per-schedule state and effectiveness."""
    snapshot = context.scheduler.status_snapshot()
    console.print("\n[bold]Schedules[/bold]")
    console.print("-" * 40)
    if not snapshot:
        console.print("[dim]No schedules configured.[/]")
        return

    table = Table()
    table.add_column("ID", justify="right")
    table.add_column("Platform")
    table.add_column("Channel")
    table.add_column("Priority", justify="right")
    table.add_column("State")
    table.add_column("Effectiveness", justify="right")
    for entry in snapshot:
        flag = " [yellow](low value)[/]" if entry.low_value else ""
        table.add_row(
            str(entry.schedule_id),
            entry.platform,
            entry.channel_id,
            str(entry.priority),
            entry.state.value if entry.active else "inactive",
            f"{entry.effectiveness:.3f}{flag}",
        )
    console.print(table)


def _display_tick(report: TickReport):
    """Display the summary of one tick."""
    console.print("\n[bold]Tick Result[/bold]")
    console.print("-" * 40)
    console.print(f"Due: {report.due}  Dispatched: {report.dispatched}  Cached: {report.cached}")
    console.print(f"Recorded: {report.recorded}  Failed: {report.failed}  Cancelled: {report.cancelled}")
    console.print(f"Skipped for quota: {report.skipped_no_quota}  Prefetched: {report.prefetched}")
    console.print(f"New items: {report.discovered}  Units charged: {report.units_charged}")


if __name__ == "__main__":
    app()
