"""
Command line interface for pgshift.

Commands:
- up: Apply pending migrations
- status: Show migration status
- rollback: Roll back the most recent migrations
- create: Create a new migration file
- validate: Check migration files for SQL anti-patterns
- verify: Check applied migrations for checksum drift

Connection settings come from DATABASE_URL / POSTGRESQL_URL, or from the
POSTGRESQL_* / PG_* variables (see pgshift.config.environment).
"""

import asyncio
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from pgshift.config.environment import Environment
from pgshift.config.logging_config import configure_logging
from pgshift.migrations.catalog import create_migration_file, list_migrations
from pgshift.migrations.exceptions import LockError, MigrationError
from pgshift.migrations.factory import create_migration_runner
from pgshift.migrations.models import MigrationResult, MigrationState
from pgshift.migrations.validator import validate_migration_sql

console = Console()


class _Options:
    def __init__(
        self,
        migrations_dir: Optional[Path],
        table: Optional[str],
        no_lock: bool,
        database_url: Optional[str],
    ):
        self.migrations_dir = migrations_dir
        self.table = table
        self.no_lock = no_lock
        self.database_url = database_url

    def resolve_dir(self) -> Path:
        return self.migrations_dir or Environment.get_migrations_dir()

    async def open_runner(self):
        return await create_migration_runner(
            database_url=self.database_url,
            migrations_dir=self.migrations_dir,
            table_name=self.table,
            use_lock=False if self.no_lock else None,
        )


pass_options = click.make_pass_decorator(_Options)


def _print_results(results: list[MigrationResult], prefix: str, dry_run: bool) -> None:
    for result in results:
        time_str = "" if dry_run else f" [bright_black]({result.execution_time_ms}ms)[/]"
        console.print(f"[green]  {prefix}: {result.version}_{result.name}[/]{time_str}")


def _print_failure(failed: MigrationResult) -> None:
    console.print(f"[red]  Failed: {failed.version}_{failed.name}[/]")
    console.print(f"[red]    Error: {failed.error}[/]")


def _print_lock_error(e: LockError) -> None:
    console.print(f"[red]❌ {e}[/]")
    console.print("[bright_black]Wait for it to finish or manually release the advisory lock.[/]")


@click.group("pgshift")
@click.option(
    "--dir",
    "migrations_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory containing migration files (default: ./migrations)",
)
@click.option("--table", type=str, default=None, help="Name of the tracking table (default: schema_migrations)")
@click.option("--no-lock", is_flag=True, help="Disable advisory locking")
@click.option(
    "--database-url",
    type=str,
    default=None,
    envvar="DATABASE_URL",
    help="PostgreSQL connection URL.",
)
@click.option("--log-level", type=str, default=None, help="Log level (default: PGSHIFT_LOG_LEVEL or INFO)")
@click.pass_context
def cli(
    ctx: click.Context,
    migrations_dir: Optional[Path],
    table: Optional[str],
    no_lock: bool,
    database_url: Optional[str],
    log_level: Optional[str],
):
    """Manage PostgreSQL schema migrations.

    Migration files live in the migrations directory and are named
    YYYYMMDDHHMMSS_name.sql, with a "-- migrate:up" section and an optional
    "-- migrate:down" section.
    """
    Environment.load_settings()
    configure_logging(log_level)
    ctx.obj = _Options(migrations_dir, table, no_lock, database_url)


@cli.command("up")
@click.option("--dry-run", is_flag=True, help="Show what would be done without making changes")
@pass_options
def up(options: _Options, dry_run: bool):
    """Apply all pending migrations.

    Examples:
        pgshift up

        pgshift up --dry-run

        pgshift --dir ./db/migrations --no-lock up
    """

    async def run_up() -> int:
        runner, pool = await options.open_runner()
        try:
            if dry_run:
                console.print("[cyan]DRY RUN - previewing pending migrations...[/]")
            else:
                console.print("[cyan]Checking for pending migrations...[/]")

            summary = await runner.migrate(dry_run=dry_run)

            if summary.total_pending == 0:
                console.print("[green]Database is up to date. No pending migrations.[/]")
                return 0

            _print_results(summary.applied, "Would apply" if dry_run else "Applied", dry_run)

            if summary.failed:
                _print_failure(summary.failed)
                return 1

            if dry_run:
                console.print(f"\n[cyan]Dry run complete: {summary.total_applied} migration(s) would be applied.[/]")
            else:
                console.print(f"\n[bold green]✅ Applied {summary.total_applied} migration(s) successfully.[/]")
            return 0
        except LockError as e:
            _print_lock_error(e)
            return 1
        finally:
            await pool.close()

    _run(run_up, "Migration failed")


@cli.command("status")
@pass_options
def status(options: _Options):
    """Show the status of every migration file."""

    async def run_status() -> int:
        runner, pool = await options.open_runner()
        try:
            statuses = await runner.get_status()
            if not statuses:
                console.print("[yellow]No migration files found.[/]")
                return 0

            table = Table(title="Migration Status")
            table.add_column("Version", style="cyan")
            table.add_column("Name", style="green")
            table.add_column("Status")
            table.add_column("Applied At", style="yellow")
            table.add_column("Time (ms)", style="blue")

            for s in statuses:
                if s.status is MigrationState.APPLIED:
                    state = "[yellow]MODIFIED[/]" if s.checksum_mismatch else "[green]Applied[/]"
                else:
                    state = "[cyan]Pending[/]"
                applied_at = s.applied_at.strftime("%Y-%m-%d %H:%M:%S") if s.applied_at else "-"
                time_ms = str(s.execution_time_ms) if s.execution_time_ms is not None else "-"
                table.add_row(s.version, s.name, state, applied_at, time_ms)

            console.print(table)

            counts = await runner.get_summary_counts()
            console.print(f"\nTotal: {counts.total} | Applied: {counts.applied} | Pending: {counts.pending}")
            return 0
        finally:
            await pool.close()

    _run(run_status, "Error getting status")


@cli.command("rollback")
@click.argument("count", type=int, default=1)
@click.option("--dry-run", is_flag=True, help="Check what would be rolled back without making changes")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@pass_options
def rollback(options: _Options, count: int, dry_run: bool, force: bool):
    """Roll back the last COUNT applied migrations (default: 1).

    Examples:
        pgshift rollback

        pgshift rollback 3 --dry-run
    """
    if count < 1:
        console.print("[red]Rollback count must be at least 1.[/]")
        raise SystemExit(1)

    if not dry_run and not force:
        if not click.confirm(f"Are you sure you want to rollback {count} migration(s)? This may cause data loss."):
            console.print("[yellow]Operation cancelled[/]")
            return

    async def run_rollback() -> int:
        runner, pool = await options.open_runner()
        try:
            if dry_run:
                console.print(f"[cyan]DRY RUN - previewing rollback of {count} migration(s)...[/]")
            else:
                console.print(f"[cyan]Rolling back {count} migration(s)...[/]")

            summary = await runner.rollback(count, dry_run=dry_run)

            if summary.total_rolled_back == 0 and not summary.failed:
                console.print("[yellow]No migrations to roll back.[/]")
                return 0

            _print_results(summary.rolled_back, "Would rollback" if dry_run else "Rolled back", dry_run)

            if summary.failed:
                _print_failure(summary.failed)
                return 1

            if dry_run:
                console.print(
                    f"\n[cyan]Dry run complete: {summary.total_rolled_back} migration(s) would be rolled back.[/]"
                )
            else:
                console.print(f"\n[bold green]✅ Rolled back {summary.total_rolled_back} migration(s) successfully.[/]")
            return 0
        except LockError as e:
            _print_lock_error(e)
            return 1
        finally:
            await pool.close()

    _run(run_rollback, "Rollback failed")


@cli.command("create")
@click.argument("name", nargs=-1, required=True)
@pass_options
def create(options: _Options, name: tuple[str, ...]):
    """Create a new migration file.

    Examples:
        pgshift create add_users_table

        pgshift create add users table
    """
    try:
        created = create_migration_file(options.resolve_dir(), "_".join(name))
    except MigrationError as e:
        console.print(f"[red]❌ {e}[/]")
        raise SystemExit(1) from e

    console.print("[green]✅ Created migration file:[/]")
    console.print(f"[cyan]  {created.filename}[/]")
    console.print(f"[bright_black]  {created.path}[/]")
    console.print()
    console.print("Edit the file, then run [bold]pgshift up[/] to apply.")


@cli.command("validate")
@click.option("--strict", is_flag=True, help="Treat warnings as failures")
@pass_options
def validate(options: _Options, strict: bool):
    """Check migration files for SQL anti-patterns.

    Exits with status 1 when any error is found, or any warning with --strict.
    No database connection is needed.
    """
    migrations = list_migrations(options.resolve_dir())
    if not migrations:
        console.print("[yellow]No migration files found.[/]")
        return

    errors = warnings = 0
    for migration in migrations:
        found = validate_migration_sql(migration.up_sql, migration.down_sql, migration.name)
        if not found:
            continue
        console.print(f"[bold]{migration.filename}[/]")
        for w in found:
            if w.level == "error":
                errors += 1
                console.print(f"  [red]error[/]   {w.message}")
            else:
                warnings += 1
                console.print(f"  [yellow]warning[/] {w.message}")

    console.print(f"\n{len(migrations)} file(s) checked: {errors} error(s), {warnings} warning(s)")
    if errors or (strict and warnings):
        raise SystemExit(1)


@cli.command("verify")
@pass_options
def verify(options: _Options):
    """Check that applied migrations have not been modified since they ran."""

    async def run_verify() -> int:
        runner, pool = await options.open_runner()
        try:
            mismatches = await runner.validate_checksums()
            if not mismatches:
                console.print("[green]✅ All migration checksums are valid[/]")
                return 0

            console.print("[red]❌ Checksum validation failed![/]")
            console.print("[yellow]The following migrations have been modified after application:[/]")
            for m in mismatches:
                console.print(f"  • {m.version}_{m.name} (expected {m.expected}, got {m.actual})")
            return 1
        finally:
            await pool.close()

    _run(run_verify, "Validation error")


def _run(command, failure_message: str) -> None:
    try:
        exit_code = asyncio.run(command())
    except Exception as e:
        console.print(f"[red]❌ {failure_message}: {e}[/]")
        raise SystemExit(1) from e
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    cli()
