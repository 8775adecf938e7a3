"""
Rich Terminal Display Components.

Provides console UI for:
- A live progress panel fed by progress sessions
- Batch summary tables with per-class counts
- Problem queue and validation listings
- Status messages
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from recon_sync.core.orchestrator import BatchResult
    from recon_sync.core.problems import ProblemRecord
    from recon_sync.core.progress import ProgressSession
    from recon_sync.core.repair import ValidationReport


console = Console()


class ProgressDisplay:
    """
    Live panel showing one batch's progress session.

    The orchestrator calls ``update`` with the session snapshot after
    every record, so the instance can be passed directly as the
    ``on_progress`` callback.

    Example:
        with ProgressDisplay() as display:
            display.start("date_range", "2024-01-01 -> 2024-01-31")
            result = await orchestrator.sync_date_range(
                "2024-01-01", "2024-01-31", on_progress=display.update,
            )
    """

    def __init__(self) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
        )
        self._live: Live | None = None
        self._task_id: Any = None
        self._stats: dict[str, Any] = {}

    def start(self, operation: str, description: str = "") -> None:
        """Start the live display."""
        self._stats = {
            "operation": operation,
            "description": description,
            "completed": 0,
            "failed": 0,
            "total": 0,
            "current_key": "",
        }
        self._task_id = self.progress.add_task(f"[cyan]{operation.upper()}", total=None)
        self._live = Live(
            self._build_display(),
            console=console,
            refresh_per_second=4,
        )
        self._live.start()

    def stop(self) -> None:
        """Stop the live display."""
        if self._live:
            self._live.stop()
            self._live = None

    def update(self, session: "ProgressSession") -> None:
        """Refresh from a progress session snapshot."""
        self._stats.update(
            completed=session.completed,
            failed=session.failed,
            total=session.total,
            current_key=session.current_key or "",
        )
        if self._task_id is not None:
            self.progress.update(
                self._task_id,
                total=session.total or None,
                completed=session.completed + session.failed,
            )
        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        op = self._stats.get("operation", "sync").upper()
        title = f"[bold white]Recon Sync - {op}[/bold white]"

        info = Table.grid(padding=(0, 2))
        info.add_column(style="dim")
        info.add_column()
        if self._stats.get("description"):
            info.add_row("Scope:", self._stats["description"])

        stats = Table.grid(padding=(0, 3))
        for _ in range(3):
            stats.add_column(justify="center")
        stats.add_row(
            f"[green]Done:[/green] {self._stats.get('completed', 0):,}",
            f"[red]Failed:[/red] {self._stats.get('failed', 0):,}",
            f"[cyan]Total:[/cyan] {self._stats.get('total', 0):,}",
        )

        status = Text()
        current = self._stats.get("current_key", "")
        if current:
            status.append("Current: ", style="dim")
            status.append(current, style="bold cyan")

        return Panel(
            Group(info, Text(), self.progress, Text(), stats, status),
            title=title,
            border_style="blue",
            padding=(1, 2),
        )

    def __enter__(self) -> "ProgressDisplay":
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_summary(result: "BatchResult") -> None:
    """Print a summary table after a batch."""
    table = Table(
        title=f"Sync Summary ({result.operation})",
        border_style="green" if result.success else "red",
    )
    table.add_column("Class", style="cyan")
    table.add_column("Synced", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Pushed", justify="right")
    table.add_column("Failed", justify="right")

    for name, counts in sorted(result.counts.items()):
        table.add_row(
            name,
            f"{counts.synced:,}",
            f"{counts.skipped:,}",
            f"{counts.pushed:,}",
            f"[red]{counts.failed:,}[/red]" if counts.failed else "0",
        )
    table.add_row(
        "[bold]Total[/bold]",
        f"[bold]{result.total_synced:,}[/bold]",
        f"[bold]{result.total_skipped:,}[/bold]",
        f"[bold]{result.total_pushed:,}[/bold]",
        f"[bold]{result.total_failed:,}[/bold]",
    )
    console.print(table)

    details = Table.grid(padding=(0, 2))
    details.add_column(style="dim")
    details.add_column()
    details.add_row("Session:", result.session_id or "-")
    details.add_row("Duration:", f"{result.duration_seconds:.1f}s")
    details.add_row("Problems queued:", str(result.problems_added))
    details.add_row("Problems resolved:", str(result.problems_resolved))
    if result.processed:
        details.add_row("Processed:", f"{result.processed:,}")
    for reason, count in sorted(result.skip_reasons.items()):
        details.add_row(f"Skipped ({reason}):", f"{count:,}")
    if result.repair is not None:
        back = result.repair.back_references
        details.add_row(
            "Repair:",
            f"{back.linked} linked, {back.conflicts} conflicts, "
            f"{result.repair.propagation.total} propagated",
        )
    if result.cancelled:
        details.add_row("Status:", "[yellow]cancelled[/yellow]")
    console.print(details)

    for step in result.steps:
        console.print(f"  [dim]-[/dim] {step}")
    for error in result.errors[:20]:
        print_error(error)
    if len(result.errors) > 20:
        print_warning(f"... and {len(result.errors) - 20} more errors")


def print_session(session: "ProgressSession") -> None:
    """Print one progress session snapshot."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column()
    table.add_row("Session", session.session_id)
    table.add_row("Category", session.category or "-")
    table.add_row("Status", session.status.value)
    table.add_row(
        "Progress",
        f"{session.completed:,} done, {session.failed:,} failed "
        f"of {session.total:,} ({session.percent}%)",
    )
    if session.current_key:
        table.add_row("Current", session.current_key)
    if session.date_from or session.date_to:
        table.add_row("Window", f"{session.date_from or '-'} -> {session.date_to or '-'}")
    if session.error:
        table.add_row("Error", f"[red]{session.error}[/red]")
    table.add_row("Updated", session.updated_at)
    console.print(Panel(table, border_style="blue"))


def print_problems(problems: Iterable["ProblemRecord"]) -> None:
    """Print problem queue entries."""
    table = Table(title="Problem Queue", border_style="yellow")
    table.add_column("Key", style="cyan")
    table.add_column("Class")
    table.add_column("Kind")
    table.add_column("Attempts", justify="right")
    table.add_column("Message")
    table.add_column("Queued", style="dim")

    for problem in problems:
        table.add_row(
            problem.natural_key,
            problem.entity_class,
            problem.kind.value,
            str(problem.attempts),
            problem.message,
            problem.timestamp,
        )
    console.print(table)


def print_validation(report: "ValidationReport", limit: int = 50) -> None:
    """Print a relationship validation report."""
    table = Table(title="Relationship Validation", border_style="blue")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Relationships checked", f"{report.total_relationships_checked:,}")
    table.add_row("Broken references", f"{report.total_errors:,}")
    table.add_row("Fixed records", f"{report.fixed_relationships:,}")
    for name, count in sorted(report.errors_by_table.items()):
        table.add_row(f"  {name}", f"{count:,}")
    console.print(table)

    for error in report.errors[:limit]:
        console.print(
            f"  [red]{error.table}[/red] {error.record_key}.{error.field} -> "
            f"{error.referenced_table} {error.referenced_key}"
        )


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[blue]ℹ[/blue] {message}")
