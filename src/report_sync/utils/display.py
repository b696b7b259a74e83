"""
Rich Terminal Display Components.

Provides console UI for:
- Sync progress bar
- Checkpoint, fetch plan and backup tables
- Migration and sync summaries
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

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
)
from rich.table import Table
from rich.text import Text

from report_sync.utils.dates import format_mts

if TYPE_CHECKING:
    from report_sync.core.coordinator import SyncProgress, SyncResult
    from report_sync.core.data_checker import CheckedColl
    from report_sync.core.messages import BackupFileMetadata
    from report_sync.core.steps import SyncUserStep
    from report_sync.migrations.engine import MigrationReport


console = Console()


class SyncProgressDisplay:
    """
    Rich terminal UI for a sync run.

    Its ``update`` method is a ``SyncRunner`` progress callback.

    Example:
        with SyncProgressDisplay(store_path) as display:
            runner = SyncRunner(dao, client, progress_callback=display.update)
            result = await runner.run(auths)
    """

    def __init__(self, store: str) -> None:
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(bar_width=40),
            TaskProgressColumn(),
            MofNCompleteColumn(),
            console=console,
        )
        self._live: Live | None = None
        self._task_id: Any = None
        self._stats: dict[str, Any] = {
            "store": store,
            "inserted": 0,
            "method": "",
            "user_id": None,
        }

    def start(self) -> None:
        self._task_id = self.progress.add_task("[cyan]SYNC", total=None)
        self._live = Live(
            self._build_display(),
            console=console,
            refresh_per_second=4,
        )
        self._live.start()

    def stop(self) -> None:
        if self._live:
            self._live.stop()
            self._live = None

    def update(self, progress: SyncProgress) -> None:
        self._stats["inserted"] += progress.inserted
        self._stats["method"] = progress.method
        self._stats["user_id"] = progress.user_id

        if self._task_id is not None:
            self.progress.update(
                self._task_id,
                completed=progress.steps_done,
                total=progress.steps_total,
            )
        if self._live:
            self._live.update(self._build_display())

    def _build_display(self) -> Panel:
        info_table = Table.grid(padding=(0, 2))
        info_table.add_column(style="dim")
        info_table.add_column()
        info_table.add_row("Store:", str(self._stats["store"]))

        status_text = Text()
        if self._stats["method"]:
            status_text.append("Current: ", style="dim")
            status_text.append(self._stats["method"], style="bold cyan")
            if self._stats["user_id"] is not None:
                status_text.append(f" (user {self._stats['user_id']})", style="dim")

        display = Group(
            info_table,
            Text(),
            self.progress,
            Text(),
            Text(f"Rows inserted: {self._stats['inserted']:,}", style="green"),
            status_text,
        )

        return Panel(
            display,
            title="[bold white]Report Sync[/bold white]",
            border_style="blue",
            padding=(1, 2),
        )

    def __enter__(self) -> "SyncProgressDisplay":
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


def print_sync_summary(result: SyncResult) -> None:
    """Print a summary table after a sync run."""
    table = Table(title="Sync Summary", border_style="green")
    table.add_column("Collection", style="cyan")
    table.add_column("Rows Inserted", justify="right")

    for name, count in sorted(result.inserted.items()):
        table.add_row(name, f"{count:,}")
    table.add_row("[bold]Total[/bold]", f"[bold]{result.total_inserted:,}[/bold]")

    console.print(table)
    console.print(f"Sync queue #{result.sync_queue_id}: {_format_state(result.state.value)}")

    if result.failed_steps:
        print_warning(f"Failed steps: {', '.join(result.failed_steps)}")
    if result.recalc is not None:
        print_info(
            f"Recalculated {result.recalc.updated_rows:,} sub-account "
            f"ledger balances in {result.recalc.pages} page(s)"
        )


def print_migration_report(report: MigrationReport) -> None:
    """Print the outcome of a migration run."""
    if report.created:
        print_success(f"Created store at schema version {report.to_version}")
        return
    if not report.applied_versions:
        print_info(f"Store is up to date (version {report.to_version})")
        return

    table = Table(title="Applied Migrations", border_style="blue")
    table.add_column("Version", justify="right")
    table.add_column("Description")
    table.add_column("State")
    for record in report.records:
        table.add_row(
            str(record.version),
            record.description,
            _format_state(record.state.value),
        )
    console.print(table)
    print_success(f"Store migrated from version {report.from_version} to {report.to_version}")


def print_checkpoints(steps: Iterable[SyncUserStep]) -> None:
    """Print sync checkpoints as a table."""
    table = Table(title="Sync Checkpoints", border_style="blue")
    table.add_column("Collection", style="cyan")
    table.add_column("User", justify="right")
    table.add_column("Symbol")
    table.add_column("Timeframe")
    table.add_column("Base Window")
    table.add_column("Curr Window")
    table.add_column("Synced At")

    for step in steps:
        table.add_row(
            step.coll_name,
            "" if step.user_id is None else str(step.user_id),
            step.symbol or "",
            step.timeframe or "",
            _format_window(step.base_start, step.base_end, step.is_base_step_ready),
            _format_window(step.curr_start, step.curr_end, step.is_curr_step_ready),
            format_mts(step.synced_at) if step.synced_at else "[dim]never[/dim]",
        )

    console.print(table)


def print_fetch_plan(plans: Iterable[tuple[str, Mapping[str, CheckedColl]]]) -> None:
    """Print the windows a sync would fetch, per scope."""
    table = Table(title="Fetch Plan", border_style="yellow")
    table.add_column("Scope", style="dim")
    table.add_column("Method", style="cyan")
    table.add_column("Symbol")
    table.add_column("Timeframe")
    table.add_column("Base Window")
    table.add_column("Curr Window")

    for scope, plan in plans:
        for method, checked in plan.items():
            for step in checked.start:
                table.add_row(
                    scope,
                    method,
                    step.symbol or "",
                    step.timeframe or "",
                    _format_window(step.base_start, step.base_end, step.is_base_step_ready),
                    _format_window(step.curr_start, step.curr_end, step.is_curr_step_ready),
                )

    console.print(table)


def print_backups(backups: Iterable[BackupFileMetadata]) -> None:
    table = Table(title="Store Backups", border_style="green")
    table.add_column("Name", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Created")

    for backup in backups:
        table.add_row(
            backup.name,
            str(backup.version),
            format_bytes(backup.size),
            backup.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)


def _format_window(start: int | None, end: int | None, is_ready: bool) -> str:
    if start is None and end is None:
        return "[dim]-[/dim]"
    span = f"{format_mts(start) if start else '0'} .. {format_mts(end) if end else 'now'}"
    return f"[green]{span}[/green]" if is_ready else f"[yellow]{span}[/yellow]"


def _format_state(state: str) -> str:
    """Format a state with color."""
    colors = {
        "FINISHED": "[green]✓ finished[/green]",
        "committed": "[green]✓ committed[/green]",
        "PROCESSING": "[yellow]⟳ processing[/yellow]",
        "INTERRUPTED": "[yellow]interrupted[/yellow]",
        "ERROR": "[red]✗ error[/red]",
        "failed": "[red]✗ failed[/red]",
    }
    return colors.get(state, state)


def format_bytes(size: int | float) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(size) < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def print_error(message: str) -> None:
    console.print(f"[red bold]Error:[/red bold] {message}")


def print_success(message: str) -> None:
    console.print(f"[green bold]✓[/green bold] {message}")


def print_warning(message: str) -> None:
    console.print(f"[yellow bold]⚠[/yellow bold] {message}")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")
