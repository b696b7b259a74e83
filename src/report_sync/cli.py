"""
Report Sync CLI - Command Line Interface.

Commands:
    migrate      Create or migrate the local store
    add-user     Store an account whose reports are synced
    sync         Sync private and public report data into the store
    status       Show sync checkpoints
    check        Preview the fetch plan of the next sync
    recalc       Recalculate sub-account ledger balances
    public-conf  Show or edit the public collections configuration
    backup       Back up the store
    backups      List store backups
    restore      Restore the store from a backup
    clear        Clear synced data (accounts and configuration are kept)
    config       Manage configuration
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from report_sync import __version__
from report_sync.config import Settings, load_settings
from report_sync.connectors.api_client import ApiClient
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.bootstrap import open_store
from report_sync.core.coordinator import SyncQueueState, SyncRunner
from report_sync.core.data_checker import CheckedColl, DataChecker
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.messages import ProcessMessage, ProcessMessageManager
from report_sync.core.public_colls_conf import PublicCollsConfAccessors
from report_sync.core.recalc import SubAccountLedgersBalancesRecalc
from report_sync.core.step_manager import StepManager
from report_sync.core.users import get_sub_user_auths, get_user_auths
from report_sync.errors import MigrationError, ReportSyncError
from report_sync.schema.registry import TableNames
from report_sync.utils.display import (
    SyncProgressDisplay,
    print_backups,
    print_checkpoints,
    print_fetch_plan,
    print_error,
    print_info,
    print_migration_report,
    print_success,
    print_sync_summary,
    print_warning,
)
from report_sync.utils.logger import setup_logging


# Create the Typer app
app = typer.Typer(
    name="report-sync",
    help="Incremental synchronization of report data into a local SQLite store.",
    add_completion=True,
    rich_markup_mode="rich",
)

console = Console()

DB_OPTION = typer.Option(
    None,
    "--db",
    help="Path to the local store (overrides config).",
    dir_okay=False,
    resolve_path=True,
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file.",
    exists=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold cyan]report-sync[/bold cyan] version {__version__}")
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
    """Report Sync - incremental report data synchronization."""
    pass


# =============================================================================
# MIGRATE Command
# =============================================================================
@app.command()
def migrate(
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Create the store or migrate it to the supported schema version."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings)
    dao.close()


# =============================================================================
# ADD-USER Command
# =============================================================================
@app.command("add-user")
def add_user(
    email: str = typer.Option(..., "--email", "-e", help="Account e-mail."),
    api_key: Optional[str] = typer.Option(
        None,
        "--api-key",
        envvar="REPORT_SYNC_API__API_KEY",
        help="API key of the account.",
    ),
    api_secret: Optional[str] = typer.Option(
        None,
        "--api-secret",
        envvar="REPORT_SYNC_API__API_SECRET",
        help="API secret of the account.",
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Store an account whose private reports are synced."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    try:
        existing = dao.get_elem_in_coll_by(TableNames.USERS, filter={"email": email})
        if existing:
            print_warning(f"User {email} already exists (id {existing['_id']})")
            raise typer.Exit(0)

        user_id = dao.insert_elem_to_db(
            TableNames.USERS,
            {
                "email": email,
                "apiKey": api_key,
                "apiSecret": api_secret,
                "active": True,
                "isDataFromDb": True,
                "isSubAccount": False,
                "isSubUser": False,
            },
        )
        print_success(f"Added user {email} (id {user_id})")
    finally:
        dao.close()


# =============================================================================
# SYNC Command
# =============================================================================
@app.command()
def sync(
    user_ids: Optional[list[int]] = typer.Option(
        None,
        "--user-id",
        "-u",
        help="Accounts to sync (can be repeated; default: all active).",
    ),
    public: bool = typer.Option(
        True,
        "--public/--no-public",
        help="Also sync public collections (candles, tickers, ...).",
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output.",
    ),
) -> None:
    """Sync report data from the remote service into the store."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    try:
        auths = get_user_auths(dao, user_ids)
        if not auths and not public:
            print_warning("No active accounts to sync")
            raise typer.Exit(0)

        interrupter = SyncInterrupter()

        async def run_sync():
            async with ApiClient.from_settings(settings) as client:
                if quiet:
                    runner = SyncRunner(
                        dao,
                        client,
                        options=settings.sync,
                        page_limit=settings.api.page_limit,
                        interrupter=interrupter,
                    )
                    return await runner.run(auths, sync_public=public)

                with SyncProgressDisplay(str(dao.path)) as display:
                    runner = SyncRunner(
                        dao,
                        client,
                        options=settings.sync,
                        page_limit=settings.api.page_limit,
                        interrupter=interrupter,
                        progress_callback=display.update,
                    )
                    return await runner.run(auths, sync_public=public)

        try:
            result = asyncio.run(run_sync())
        except KeyboardInterrupt:
            interrupter.interrupt()
            print_warning("Sync interrupted; unfinished windows resume on the next run")
            raise typer.Exit(130)

        if not quiet:
            print_sync_summary(result)
        if result.failed_steps:
            raise typer.Exit(1)
    finally:
        dao.close()


# =============================================================================
# STATUS Command
# =============================================================================
@app.command()
def status(
    user_id: Optional[int] = typer.Option(
        None,
        "--user-id",
        "-u",
        help="Only checkpoints of this account.",
    ),
    coll_name: Optional[str] = typer.Option(
        None,
        "--coll",
        help="Only checkpoints of this sync method (e.g. getLedgers).",
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Show sync checkpoints and the last sync runs."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    try:
        steps = StepManager(dao).get_steps(user_id=user_id, coll_name=coll_name)
        if not steps:
            print_info("No sync checkpoints found. Run a sync first.")
            raise typer.Exit(0)

        print_checkpoints(steps)

        queue = dao.get_elems_in_coll_by(
            TableNames.SYNC_QUEUE,
            sort=[("_id", -1)],
            limit=5,
        )
        if queue:
            console.print()
            table = Table(title="Recent Syncs", border_style="green")
            table.add_column("Id", justify="right")
            table.add_column("State")
            table.add_column("Owner", justify="right")
            for row in queue:
                table.add_row(
                    str(row["_id"]),
                    str(row.get("state")),
                    "" if row.get("ownerUserId") is None else str(row["ownerUserId"]),
                )
            console.print(table)
    finally:
        dao.close()


# =============================================================================
# CHECK Command
# =============================================================================
class _PreviewDone(Exception):
    """Rolls back the checkpoints created while previewing a plan."""


@app.command()
def check(
    user_ids: Optional[list[int]] = typer.Option(
        None,
        "--user-id",
        "-u",
        help="Accounts to check (can be repeated; default: all active).",
    ),
    public: bool = typer.Option(
        True,
        "--public/--no-public",
        help="Also check public collections.",
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Preview the windows the next sync would fetch; the store is left unchanged."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    plans: list[tuple[str, dict[str, CheckedColl]]] = []
    try:
        auths = get_user_auths(dao, user_ids)
        checker = DataChecker(dao, StepManager(dao), options=settings.sync)

        try:
            with dao.transaction():
                sync_queue_id = dao.insert_elem_to_db(
                    TableNames.SYNC_QUEUE,
                    {"collName": "ALL", "state": SyncQueueState.NEW.value},
                )
                checker.init(sync_queue_id)

                for auth in auths:
                    scope = f"user {auth.user_id}"
                    if auth.sub_user_id is not None:
                        scope += f" / sub-user {auth.sub_user_id}"
                    plans.append((scope, checker.check_new_data(auth)))
                if public:
                    plans.append(("public", checker.check_new_public_data()))

                raise _PreviewDone()
        except _PreviewDone:
            pass
    finally:
        dao.close()

    if not any(plan for _, plan in plans):
        print_success("Everything is synced; nothing to fetch.")
        return
    print_fetch_plan(plans)


# =============================================================================
# RECALC Command
# =============================================================================
@app.command()
def recalc(
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Recalculate the balances of sub-account ledger rows."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    try:
        ownership = get_sub_user_auths(dao)
        if not ownership:
            print_info("No sub-accounts stored; nothing to recalculate.")
            raise typer.Exit(0)

        stats = SubAccountLedgersBalancesRecalc(dao, options=settings.sync).run(ownership)
        print_success(
            f"Recalculated {stats.updated_rows:,} ledger balances in {stats.pages} page(s)"
        )
        if stats.reached_page_limit:
            print_warning("Stopped at the page limit; run recalc again to continue")
    finally:
        dao.close()


# =============================================================================
# PUBLIC-CONF Command
# =============================================================================
@app.command("public-conf")
def public_conf(
    user_id: int = typer.Option(..., "--user-id", "-u", help="Account id."),
    set_file: Optional[Path] = typer.Option(
        None,
        "--set",
        help="JSON file mapping conf names to their entries.",
        exists=True,
        dir_okay=False,
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Show or replace the public collections configuration of an account."""
    settings = _build_settings(config_file, db=db)
    dao = _open(settings, quiet=True)

    try:
        accessors = PublicCollsConfAccessors(dao)

        if set_file:
            params = json.loads(set_file.read_text())
            edited = accessors.edit_all_public_colls_confs(user_id, params)
            print_success(f"Edited configuration of: {', '.join(edited) or 'nothing'}")

        table = Table(title="Public Collections Configuration", border_style="cyan")
        table.add_column("Conf", style="cyan")
        table.add_column("Symbol")
        table.add_column("Timeframe")
        table.add_column("Start", justify="right")
        for conf_name, confs in accessors.get_all_public_colls_confs(user_id).items():
            for conf in confs:
                table.add_row(
                    conf_name,
                    str(conf.get("symbol")),
                    conf.get("timeframe") or "",
                    str(conf.get("start") or 0),
                )
        console.print(table)
    finally:
        dao.close()


# =============================================================================
# BACKUP / RESTORE / CLEAR Commands
# =============================================================================
@app.command()
def backup(
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Back up the store into the backups directory."""
    _handle_message(ProcessMessage.BACKUP_DB, config_file, db)


@app.command()
def backups(
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """List store backups, newest first."""
    settings = _build_settings(config_file, db=db)
    dao = SQLiteConnector(settings.database.path, settings=settings)
    try:
        found = ProcessMessageManager(dao, settings).get_backup_files_metadata()
    finally:
        dao.close()

    if not found:
        print_info(f"No backups in {settings.database.backups_dir}")
        raise typer.Exit(0)
    print_backups(found)


@app.command()
def restore(
    name: Optional[str] = typer.Option(
        None,
        "--name",
        "-n",
        help="Backup file name (default: newest compatible backup).",
    ),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Restore the store from a backup and migrate it."""
    _handle_message(ProcessMessage.RESTORE_DB, config_file, db, {"name": name})


@app.command()
def clear(
    remove: bool = typer.Option(
        False,
        "--remove",
        help="Drop every table (accounts included) and recreate the store.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    db: Optional[Path] = DB_OPTION,
    config_file: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Clear synced data; accounts and their configuration are kept."""
    what = "ALL tables, accounts included" if remove else "all synced data"
    if not yes:
        typer.confirm(f"This removes {what}. Continue?", abort=True)

    message = ProcessMessage.REMOVE_ALL_TABLES if remove else ProcessMessage.CLEAR_ALL_TABLES
    _handle_message(message, config_file, db)


# =============================================================================
# CONFIG Command
# =============================================================================
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
        help="Initialize a config file with the defaults.",
    ),
    output: Path = typer.Option(
        Path("config.toml"),
        "--output",
        "-o",
        help="Output path for config file.",
    ),
) -> None:
    """Manage configuration."""
    if init:
        Settings().to_file(output)
        print_success(f"Generated config file: {output}")
        return

    if show:
        settings = Settings()
        table = Table(title="Current Configuration", border_style="cyan")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Store", str(settings.database.path))
        table.add_row("Backups", str(settings.database.backups_dir))
        table.add_row("API Base URL", settings.api.base_url)
        table.add_row(
            "API Credentials",
            "[dim]not set[/dim]" if settings.validate_credentials() else "set",
        )
        table.add_row("Page Limit", f"{settings.api.page_limit} rows")
        table.add_row(
            "Freshness Gap", f"{settings.sync.allowed_freshness_gap_minutes} min"
        )
        table.add_row("Start Drift", f"{settings.sync.allowed_start_drift_minutes} min")
        table.add_row("Candles", f"{settings.sync.candles_timeframe} to {settings.sync.convert_to}")

        console.print(table)
        return

    console.print("Use --show to view config or --init to create config file.")


# =============================================================================
# Helper Functions
# =============================================================================
def _build_settings(
    config_file: Path | None = None,
    db: Path | None = None,
) -> Settings:
    """Build settings from config file and overrides."""
    settings = load_settings(config_file)
    if db:
        settings.database.path = db

    setup_logging(settings.logging)
    return settings


def _open(settings: Settings, quiet: bool = False) -> SQLiteConnector:
    """Open and migrate the store, exiting on failure."""
    try:
        dao, report = open_store(settings=settings)
    except MigrationError as e:
        print_error(str(e))
        print_info("Restore a backup with `report-sync restore` or recreate the store with `report-sync clear --remove`")
        raise typer.Exit(1)

    if not quiet or report.created or report.applied_versions:
        print_migration_report(report)
    return dao


def _handle_message(
    message: ProcessMessage,
    config_file: Path | None,
    db: Path | None,
    payload: dict | None = None,
) -> None:
    settings = _build_settings(config_file, db=db)
    # Restoring must work when the current store can not be migrated
    dao = SQLiteConnector(settings.database.path, settings=settings)

    try:
        response = ProcessMessageManager(dao, settings).handle(message, payload)
    except ReportSyncError as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        dao.close()

    if not response.ok:
        print_error(response.error or f"{message.value} failed")
        raise typer.Exit(1)

    summary = ", ".join(
        f"{k}={v}" for k, v in response.data.items() if not isinstance(v, (list, dict))
    )
    print_success(f"{message.value}: {summary or 'done'}")


if __name__ == "__main__":
    app()
