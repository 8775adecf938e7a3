"""
Recon Sync CLI - Command Line Interface.

Batch reconciliation between the source REST API and the local store.

Commands:
    sync-range   Reconcile every record modified inside a date window
    sync-ids     Reconcile an explicit list of IDs
    upload       Merge an uploaded JSON export
    sync-seda    Reconcile SEDA registrations only
    sync-class   Reconcile one entity class
    sync-one     Reconcile one invoice with its whole package
    push         Push a locally edited record back to the source
    repair       Run the relationship repair pass / validation
    progress     Inspect or cancel progress sessions
    problems     List or clear the problem queue
    status       Show local store and queue status
    init-db      Create the local tables
    config       Manage configuration
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.table import Table

from recon_sync import __version__
from recon_sync.config import Settings, load_settings
from recon_sync.connectors.local_store import LocalStore
from recon_sync.connectors.source_client import create_source_client
from recon_sync.core.orchestrator import BatchResult, ProgressCallback, SyncOrchestrator
from recon_sync.core.problems import ProblemQueue
from recon_sync.core.progress import ProgressTracker
from recon_sync.core.repair import RelationshipRepair, write_report
from recon_sync.models import ProblemKind, parse_timestamp
from recon_sync.utils.display import (
    ProgressDisplay,
    print_error,
    print_info,
    print_problems,
    print_session,
    print_success,
    print_summary,
    print_validation,
    print_warning,
)
from recon_sync.utils.logger import ActivityLog, setup_logging


# Create the Typer app
app = typer.Typer(
    name="recon-sync",
    help="Reconcile a paginated REST source into a local SQLite store.",
    add_completion=True,
    rich_markup_mode="rich",
)
problems_app = typer.Typer(help="Inspect and clear the problem queue.")
app.add_typer(problems_app, name="problems")

console = Console()

BatchCall = Callable[[SyncOrchestrator, Optional[ProgressCallback]], Awaitable[BatchResult]]

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
)
STORE_OPTION = typer.Option(
    None,
    "--store",
    "-s",
    help="Path to the local SQLite store (overrides config).",
)
QUIET_OPTION = typer.Option(
    False,
    "--quiet",
    "-q",
    help="Minimal output.",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]recon-sync[/bold cyan] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Recon Sync - reconcile a REST source into a local store."""
    pass


# =============================================================================
# Batch Commands
# =============================================================================
@app.command("sync-range")
def sync_range(
    date_from: str = typer.Option(..., "--from", "-f", help="Window start (ISO date or datetime)."),
    date_to: Optional[str] = typer.Option(None, "--to", "-t", help="Window end (default: now)."),
    classes: Optional[list[str]] = typer.Option(
        None,
        "--class",
        help="Entity classes to include (can be repeated).",
    ),
    no_push: bool = typer.Option(False, "--no-push", help="Never write back to the source."),
    no_repair: bool = typer.Option(False, "--no-repair", help="Skip the repair pass."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """
    Reconcile every record modified inside a date window.

    Example:
        recon-sync sync-range --from 2024-01-01 --to 2024-01-31
    """
    settings = _build_settings(config_file, store=store, no_push=no_push, no_repair=no_repair)
    start = _parse_date(date_from)
    end = _parse_date(date_to, end_of_day=True) if date_to else None

    _run_batch(
        settings,
        "date_range",
        f"{date_from} -> {date_to or 'now'}",
        lambda o, cb: o.sync_date_range(start, end, classes or None, on_progress=cb),
        quiet,
    )


@app.command("sync-ids")
def sync_ids(
    file: Optional[Path] = typer.Argument(
        None,
        help="File with one ID (or class,id[,modified]) per line.",
        exists=True,
        dir_okay=False,
    ),
    ids: Optional[str] = typer.Option(None, "--ids", help="Comma or newline separated IDs."),
    default_class: str = typer.Option(
        "invoice",
        "--default-class",
        help="Class of bare IDs.",
    ),
    no_push: bool = typer.Option(False, "--no-push", help="Never write back to the source."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """
    Reconcile an explicit list of records.

    Example:
        recon-sync sync-ids ids.csv
        recon-sync sync-ids --ids "1699876543210x1,1699876543210x2"
    """
    if file is None and not ids:
        print_error("Give an ID file or --ids.")
        raise typer.Exit(1)
    text = file.read_text() if file else ids or ""
    settings = _build_settings(config_file, store=store, no_push=no_push)

    _run_batch(
        settings,
        "id_list",
        str(file) if file else "inline IDs",
        lambda o, cb: o.sync_id_list(text, default_class, on_progress=cb),
        quiet,
    )


@app.command()
def upload(
    file: Path = typer.Argument(..., help="JSON array export.", exists=True, dir_okay=False),
    entity_class: str = typer.Option(
        ...,
        "--class",
        help="invoice, payment, seda_registration, invoice_item or user.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """
    Merge an uploaded JSON export into the local store.

    Example:
        recon-sync upload export.json --class payment
    """
    settings = _build_settings(config_file, store=store)
    payload = file.read_text()

    _run_batch(
        settings,
        "upload",
        f"{file.name} ({entity_class})",
        lambda o, cb: o.upload_json(entity_class, payload, on_progress=cb),
        quiet,
        needs_source=False,
    )


@app.command("sync-seda")
def sync_seda(
    date_from: Optional[str] = typer.Option(None, "--from", "-f", help="Window start."),
    date_to: Optional[str] = typer.Option(None, "--to", "-t", help="Window end."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """Reconcile SEDA registrations only."""
    settings = _build_settings(config_file, store=store)
    start = _parse_date(date_from) if date_from else None
    end = _parse_date(date_to, end_of_day=True) if date_to else None

    _run_batch(
        settings,
        "sync_seda_registration",
        f"{date_from or 'all'} -> {date_to or 'now'}",
        lambda o, cb: o.sync_seda(start, end, on_progress=cb),
        quiet,
    )


@app.command("sync-class")
def sync_class(
    entity_class: str = typer.Argument(..., help="Entity class name."),
    date_from: Optional[str] = typer.Option(None, "--from", "-f", help="Window start."),
    date_to: Optional[str] = typer.Option(None, "--to", "-t", help="Window end."),
    no_push: bool = typer.Option(False, "--no-push", help="Never write back to the source."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """Reconcile one entity class."""
    settings = _build_settings(config_file, store=store, no_push=no_push)
    start = _parse_date(date_from) if date_from else None
    end = _parse_date(date_to, end_of_day=True) if date_to else None

    _run_batch(
        settings,
        f"sync_{entity_class}",
        f"{entity_class}: {date_from or 'all'} -> {date_to or 'now'}",
        lambda o, cb: o.sync_class(entity_class, start, end, on_progress=cb),
        quiet,
    )


@app.command("sync-one")
def sync_one(
    natural_key: str = typer.Argument(..., help="Invoice natural key."),
    force: bool = typer.Option(False, "--force", help="Resync even when nothing changed."),
    skip_classes: Optional[list[str]] = typer.Option(
        None,
        "--skip-class",
        help="Child classes to leave alone, e.g. user (can be repeated).",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """
    Reconcile one invoice together with its whole package.

    Example:
        recon-sync sync-one 1699876543210x123 --force --skip-class user
    """
    settings = _build_settings(config_file, store=store)

    _run_batch(
        settings,
        "aggregate",
        natural_key,
        lambda o, cb: o.sync_aggregate(
            natural_key, force=force, skip_classes=skip_classes or (), on_progress=cb,
        ),
        quiet,
    )


@app.command()
def push(
    entity_class: str = typer.Argument(..., help="Entity class (agent, user or payment)."),
    natural_key: str = typer.Argument(..., help="Natural key of the local record."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
    quiet: bool = QUIET_OPTION,
) -> None:
    """Push a locally edited record back to the source."""
    settings = _build_settings(config_file, store=store)

    _run_batch(
        settings,
        "push",
        f"{entity_class} {natural_key}",
        lambda o, cb: o.push_record(entity_class, natural_key, on_progress=cb),
        quiet,
    )


# =============================================================================
# REPAIR Command
# =============================================================================
@app.command()
def repair(
    validate: bool = typer.Option(
        False,
        "--validate",
        help="Check every reference instead of repairing back-references.",
    ),
    fix: bool = typer.Option(False, "--fix", help="With --validate, drop broken links."),
    tables: Optional[list[str]] = typer.Option(
        None,
        "--table",
        help="Classes to validate (can be repeated).",
    ),
    report: bool = typer.Option(False, "--report", help="Write JSON and text reports."),
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
) -> None:
    """Run the relationship repair pass, or validate every reference."""
    settings = _build_settings(config_file, store=store)
    _setup_logging(settings)
    activity = ActivityLog(settings.logging.activity_file, settings.logging.activity_buffer_size)

    with LocalStore(settings.store.path) as local:
        repairer = RelationshipRepair(local, activity=activity)
        if not validate:
            result = repairer.run()
            back = result.back_references
            table = Table(title="Repair Pass", border_style="green")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", justify="right")
            table.add_row("Back-references linked", str(back.linked))
            table.add_row("Already linked", str(back.skipped))
            table.add_row("Targets not found", str(back.not_found))
            table.add_row("Conflicts", str(back.conflicts))
            for label, count in sorted(result.propagation.filled.items()):
                table.add_row(f"Propagated {label}", str(count))
            console.print(table)
            if back.conflicts:
                print_warning(f"{back.conflicts} conflicting back-references left untouched")
            return

        validation = repairer.validate(tables or None, fix_broken_links=fix)

    print_validation(validation)
    if report or settings.repair.write_reports:
        json_path, txt_path = write_report(validation, settings.repair.report_dir)
        print_success(f"Reports written: {json_path}, {txt_path}")
    if validation.total_errors and not fix:
        raise typer.Exit(1)


# =============================================================================
# PROGRESS Command
# =============================================================================
@app.command()
def progress(
    session_id: Optional[str] = typer.Argument(None, help="Session to show."),
    cancel: bool = typer.Option(False, "--cancel", help="Request cancellation of the session."),
    cleanup: bool = typer.Option(False, "--cleanup", help="Delete expired sessions."),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Inspect or cancel progress sessions."""
    settings = _build_settings(config_file)
    tracker = ProgressTracker(settings.sync.progress_file, settings.sync.progress_ttl_hours)

    if cleanup:
        removed = tracker.cleanup()
        print_success(f"Removed {removed} expired sessions")

    if session_id is None:
        sessions = tracker.list_sessions()
        if not sessions:
            print_info("No progress sessions found.")
            return
        table = Table(title="Progress Sessions", border_style="blue")
        table.add_column("Session", style="cyan")
        table.add_column("Category")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Created", style="dim")
        for session in sessions:
            table.add_row(
                session.session_id,
                session.category,
                _format_status(session.status.value),
                f"{session.completed:,}/{session.total:,} ({session.percent}%)",
                session.created_at,
            )
        console.print(table)
        return

    if cancel:
        if tracker.request_cancel(session_id):
            print_success(f"Cancellation requested for {session_id}")
        else:
            print_error(f"Session {session_id} is not running")
            raise typer.Exit(1)
        return

    session = tracker.get(session_id)
    if session is None:
        print_error(f"Unknown session: {session_id}")
        raise typer.Exit(1)
    print_session(session)
    for line in session.details[-20:]:
        console.print(f"  [dim]{line}[/dim]")


# =============================================================================
# PROBLEMS Commands
# =============================================================================
@problems_app.command("list")
def problems_list(
    kind: Optional[ProblemKind] = typer.Option(None, "--kind", help="Only one kind."),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """List queued problems, oldest first."""
    settings = _build_settings(config_file)
    queue = ProblemQueue(settings.sync.problem_queue_file)
    entries = queue.list(kind)
    if not entries:
        print_success("Problem queue is empty.")
        return
    print_problems(entries)


@problems_app.command("clear")
def problems_clear(
    natural_key: Optional[str] = typer.Argument(None, help="Clear only this key."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Clear one problem, or the whole queue."""
    settings = _build_settings(config_file)
    queue = ProblemQueue(settings.sync.problem_queue_file)
    if natural_key is None and not yes:
        typer.confirm(f"Clear all {len(queue)} queued problems?", abort=True)
    removed = queue.clear(natural_key)
    print_success(f"Cleared {removed} problem(s)")


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
) -> None:
    """Show local store, problem queue and latest session."""
    settings = _build_settings(config_file, store=store)

    if not settings.store.path.exists():
        print_info(f"No local store at {settings.store.path}. Run init-db or a sync first.")
        raise typer.Exit(0)

    with LocalStore(settings.store.path, readonly=True) as local:
        counts = local.table_counts()

    table = Table(title="Local Store", border_style="blue")
    table.add_column("Class", style="cyan")
    table.add_column("Rows", justify="right")
    for name, count in counts.items():
        table.add_row(name, f"{count:,}")
    console.print(table)

    queue = ProblemQueue(settings.sync.problem_queue_file)
    by_kind: dict[str, int] = {}
    for entry in queue.list():
        by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
    if by_kind:
        print_warning(
            "Problem queue: "
            + ", ".join(f"{count} {kind}" for kind, count in sorted(by_kind.items()))
        )
    else:
        print_success("Problem queue is empty")

    sessions = ProgressTracker(settings.sync.progress_file).list_sessions()
    if sessions:
        latest = sessions[0]
        console.print(
            f"Latest session: {latest.session_id} {latest.category} "
            f"{_format_status(latest.status.value)}"
        )


def _format_status(status: str) -> str:
    """Format status with color."""
    colors = {
        "completed": "[green]✓ completed[/green]",
        "running": "[yellow]⟳ running[/yellow]",
        "error": "[red]✗ error[/red]",
        "idle": "[dim]idle[/dim]",
    }
    return colors.get(status, status)


# =============================================================================
# INIT-DB / CONFIG Commands
# =============================================================================
@app.command("init-db")
def init_db(
    config_file: Optional[Path] = CONFIG_OPTION,
    store: Optional[Path] = STORE_OPTION,
) -> None:
    """Create the local tables."""
    settings = _build_settings(config_file, store=store)
    with LocalStore(settings.store.path) as local:
        tables = local.create_tables()
    print_success(f"Initialized {len(tables)} tables in {settings.store.path}")


@app.command()
def config(
    show: bool = typer.Option(
        False,
        "--show",
        help="Show current configuration.",
    ),
    init: bool = typer.Option(
        False,
        "--init",
        help="Write a config file with the default settings.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Manage configuration."""
    if init:
        settings = _build_settings(config_file)
        settings.to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = _build_settings(config_file)
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        table.add_row("Source URL", settings.source_base_url or "[dim]not set[/dim]")
        table.add_row(
            "API Token",
            "***" if settings.source_api_token.get_secret_value() else "[dim]not set[/dim]",
        )
        table.add_row("Store", str(settings.store.path))
        table.add_row("Page Limit", str(settings.source.page_limit))
        table.add_row("Max Concurrency", str(settings.source.max_concurrency))
        table.add_row("Push Enabled", str(settings.sync.enable_push))
        table.add_row("Push Classes", ", ".join(settings.sync.push_classes))
        table.add_row("Repair After Batch", str(settings.sync.repair_after_batch))
        table.add_row("Problem Queue", str(settings.sync.problem_queue_file))
        console.print(table)
        return

    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None = None,
    **overrides: Any,
) -> Settings:
    """Build settings from config file and overrides."""
    try:
        settings = load_settings(config_file) if config_file else Settings()
    except (ValueError, FileNotFoundError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    # Apply CLI overrides
    if overrides.get("store"):
        settings.store.path = Path(overrides["store"])
    if overrides.get("no_push"):
        settings.sync.enable_push = False
    if overrides.get("no_repair"):
        settings.sync.repair_after_batch = False
    return settings


def _parse_date(value: str, end_of_day: bool = False) -> datetime:
    """Parse an ISO date; a bare date as window end covers the whole day."""
    try:
        parsed = parse_timestamp(value)
    except ValueError:
        raise typer.BadParameter(f"Not an ISO date or datetime: {value}")
    if parsed is None:
        raise typer.BadParameter("Date must not be empty")
    if end_of_day and len(value.strip()) == 10:
        parsed = parsed + timedelta(days=1) - timedelta(milliseconds=1)
    return parsed


def _setup_logging(settings: Settings, quiet: bool = False) -> None:
    setup_logging(
        level="WARNING" if quiet else settings.logging.level,
        log_file=settings.logging.file,
        format_style=settings.logging.format,
        max_file_size_mb=settings.logging.max_file_size_mb,
        backup_count=settings.logging.backup_count,
    )


def _run_batch(
    settings: Settings,
    operation: str,
    description: str,
    call: BatchCall,
    quiet: bool = False,
    needs_source: bool = True,
) -> BatchResult:
    """Open store and source, run one orchestrator call and report on it."""
    if needs_source:
        errors = settings.validate_credentials()
        if errors:
            for err in errors:
                print_error(err)
            print_info("Set RECON_SYNC_SOURCE_BASE_URL and RECON_SYNC_SOURCE_API_TOKEN or use --config.")
            raise typer.Exit(1)

    _setup_logging(settings, quiet)
    display = ProgressDisplay() if not quiet else None

    async def runner() -> BatchResult:
        local = LocalStore(settings.store.path)
        try:
            async with create_source_client(settings) as source:
                orchestrator = SyncOrchestrator(settings, local, source)
                return await call(orchestrator, display.update if display else None)
        finally:
            local.close()

    try:
        if display:
            display.start(operation, description)
        result = asyncio.run(runner())
    except (KeyError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        if display:
            display.stop()

    if not quiet:
        console.print()
        print_summary(result)

    if not result.success:
        print_error(result.validation_error or f"{operation} failed")
        raise typer.Exit(1)
    if result.cancelled:
        print_warning(f"{operation} cancelled; records handled so far are kept")
    elif result.errors:
        print_warning(f"{operation} finished with {len(result.errors)} errors")
    else:
        print_success(f"{operation} completed successfully!")
    return result


if __name__ == "__main__":
    app()
