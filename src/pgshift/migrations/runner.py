"""
Migration runner for the pgshift migration system.

Provides the core MigrationRunner class that handles:
- Migration discovery and ordering
- Migration execution with transaction safety
- Migration tracking and version management
- Advisory locking for multi-instance deployments
- Rollback support
- Checksum validation

Each migration runs in its own transaction on a freshly checked-out pooled
connection, together with the insert or delete of its tracking record. A
batch stops at the first failure; everything committed before it stays
committed.
"""

import time
from contextlib import AbstractAsyncContextManager, nullcontext
from pathlib import Path
from typing import Any

from pgshift.migrations import catalog
from pgshift.migrations.exceptions import (
    ConfigurationError,
    ExecutionError,
    MigrationError,
    MigrationFileNotFoundError,
    RollbackError,
)
from pgshift.migrations.lock import advisory_lock
from pgshift.migrations.models import (
    ChecksumMismatch,
    CreatedMigration,
    MigrationConfig,
    MigrationFile,
    MigrationRecord,
    MigrationResult,
    MigrationRollbackSummary,
    MigrationRunSummary,
    MigrationState,
    MigrationStatus,
    MigrationSummary,
    ValidationWarning,
)
from pgshift.migrations.store import AppliedRecordStore, build_status, pending_migrations
from pgshift.migrations.validator import validate_migration_sql


def _elapsed_ms(start_time: float) -> int:
    return int((time.monotonic() - start_time) * 1000)


class MigrationRunner:
    """Applies and rolls back SQL migrations against one PostgreSQL database.

    Example:
        pool = AsyncConnectionPool(conninfo, open=False)
        await pool.open()
        runner = MigrationRunner(MigrationConfig(pool=pool, migrations_dir=Path("migrations")))

        summary = await runner.migrate()
        if summary.failed:
            print(summary.failed.error)

        await runner.rollback(1, dry_run=True)
    """

    def __init__(self, config: MigrationConfig):
        """Initialize the migration runner.

        Args:
            config: Runner configuration holding an already-open connection pool

        Raises:
            ConfigurationError: If the config has no usable pool or an invalid table name
        """
        pool = config.pool
        if pool is None or not callable(getattr(pool, "connection", None)):
            raise ConfigurationError(
                "MigrationRunner requires a connection pool. "
                "Provide MigrationConfig(pool=...) or use create_migration_runner()."
            )

        self._pool = pool
        self._migrations_dir = Path(config.migrations_dir)
        self._lock_id = config.lock_id
        self._use_lock = config.use_lock
        self._log = config.logger
        self._store = AppliedRecordStore(pool, config.table_name)

    @property
    def migrations_dir(self) -> Path:
        return self._migrations_dir

    @property
    def table_name(self) -> str:
        return self._store.table_name

    @property
    def lock_id(self) -> int:
        return self._lock_id

    # -------------------------------------------------------------------------
    # Files and records
    # -------------------------------------------------------------------------

    async def ensure_table(self) -> None:
        """Create the tracking table if it does not exist."""
        await self._store.ensure_table()

    def list_files(self) -> list[MigrationFile]:
        """Read all migration files, sorted by version."""
        return catalog.list_migrations(self._migrations_dir, self._log)

    async def list_applied(self) -> list[MigrationRecord]:
        """Read all tracking records, sorted by version."""
        return await self._store.list_applied()

    async def get_status(self) -> list[MigrationStatus]:
        """Status of every migration file, with checksum drift flagged."""
        files = self.list_files()
        applied = await self.list_applied()
        return build_status(files, applied)

    async def get_pending_migrations(self) -> list[MigrationFile]:
        """Migration files that have not been applied yet."""
        files = self.list_files()
        applied = await self.list_applied()
        return pending_migrations(files, applied)

    async def has_pending_migrations(self) -> bool:
        return bool(await self.get_pending_migrations())

    async def get_summary_counts(self) -> MigrationSummary:
        """Count applied vs pending migration files."""
        status = await self.get_status()
        applied = sum(1 for s in status if s.status is MigrationState.APPLIED)
        return MigrationSummary(applied=applied, pending=len(status) - applied, total=len(status))

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate_checksums(self) -> list[ChecksumMismatch]:
        """Compare recorded checksums of applied migrations with the files on disk.

        Mismatches are reported, never raised; whether drift should block a
        deployment is up to the caller.
        """
        files = self.list_files()
        checksums = {f.version: f.checksum for f in files}
        mismatches = []
        for status in build_status(files, await self.list_applied()):
            if not status.checksum_mismatch:
                continue
            file_checksum = checksums[status.version]
            self._log.warning(
                f"Checksum mismatch for migration {status.version}_{status.name}: "
                f"expected {status.checksum}, got {file_checksum}"
            )
            mismatches.append(
                ChecksumMismatch(
                    version=status.version,
                    name=status.name,
                    expected=status.checksum or "",
                    actual=file_checksum,
                )
            )
        return mismatches

    def validate_files(self) -> dict[str, list[ValidationWarning]]:
        """Run the SQL validator over every migration file.

        Returns:
            Filename to warnings, for files that produced at least one warning
        """
        results = {}
        for migration in self.list_files():
            warnings = validate_migration_sql(migration.up_sql, migration.down_sql, migration.name)
            if warnings:
                results[migration.filename] = warnings
        return results

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def _batch_lock(self, dry_run: bool) -> AbstractAsyncContextManager[Any]:
        if dry_run or not self._use_lock:
            return nullcontext()
        return advisory_lock(self._pool, self._lock_id, self._log)

    # -------------------------------------------------------------------------
    # Migrate
    # -------------------------------------------------------------------------

    async def migrate(self, dry_run: bool = False) -> MigrationRunSummary:
        """Apply all pending migrations in version order.

        Args:
            dry_run: Report what would be applied without touching the database.
                Dry runs take no migration lock, so they can overlap a live batch.

        Returns:
            Summary of the migrations that were processed; ``failed`` holds the
            migration that stopped the batch, if any

        Raises:
            LockError: If another process holds the migration lock
        """
        await self.ensure_table()
        pending = await self.get_pending_migrations()

        summary = MigrationRunSummary(total_pending=len(pending), dry_run=dry_run)
        if not pending:
            self._log.info("No pending migrations")
            return summary

        self._log.info(f"Found {len(pending)} pending migration(s)")

        async with self._batch_lock(dry_run):
            for migration in pending:
                if dry_run:
                    self._log.info(f"[DRY RUN] Would apply: {migration.version}_{migration.name}")
                    result = MigrationResult(
                        success=True,
                        version=migration.version,
                        name=migration.name,
                        execution_time_ms=0,
                    )
                else:
                    result = await self._apply_migration(migration)

                if not result.success:
                    summary.failed = result
                    break
                summary.applied.append(result)
                summary.total_applied += 1

        return summary

    async def _apply_migration(self, migration: MigrationFile) -> MigrationResult:
        """Apply a single migration with transaction safety."""
        self._log.info(f"Applying migration: {migration.version} ({migration.name})")
        start_time = time.monotonic()

        async with self._pool.connection() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(migration.up_sql)
                    await self._store.insert(
                        migration.version,
                        migration.name,
                        _elapsed_ms(start_time),
                        migration.checksum,
                        conn=conn,
                    )
            except Exception as e:
                error = ExecutionError(migration.version, migration.name, "up", e)
                self._log.error(str(error))
                return MigrationResult(
                    success=False,
                    version=migration.version,
                    name=migration.name,
                    execution_time_ms=_elapsed_ms(start_time),
                    error=str(e),
                )

        execution_time_ms = _elapsed_ms(start_time)
        self._log.info(f"Migration {migration.version} applied successfully in {execution_time_ms}ms")
        return MigrationResult(
            success=True,
            version=migration.version,
            name=migration.name,
            execution_time_ms=execution_time_ms,
        )

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    async def rollback(self, count: int = 1, dry_run: bool = False) -> MigrationRollbackSummary:
        """Roll back the last ``count`` applied migrations, most recent first.

        Args:
            count: Number of migrations to roll back
            dry_run: Check that each rollback is possible without executing it.
                Dry runs take no migration lock, so they can overlap a live batch.

        Returns:
            Summary of the migrations that were processed; ``failed`` holds the
            migration that stopped the batch, if any

        Raises:
            ValueError: If count is less than 1
            LockError: If another process holds the migration lock
        """
        if count < 1:
            raise ValueError("Rollback count must be at least 1")

        await self.ensure_table()
        applied = await self.list_applied()
        files_by_version = {m.version: m for m in self.list_files()}
        to_rollback = list(reversed(applied[-count:]))

        summary = MigrationRollbackSummary(dry_run=dry_run)
        if not to_rollback:
            self._log.info("No migrations to rollback")
            return summary

        async with self._batch_lock(dry_run):
            for record in to_rollback:
                try:
                    migration = self._rollback_source(record, files_by_version)
                except MigrationError as e:
                    self._log.error(str(e))
                    summary.failed = MigrationResult(
                        success=False,
                        version=record.version,
                        name=record.name,
                        execution_time_ms=0,
                        error=str(e),
                    )
                    break

                if dry_run:
                    self._log.info(f"[DRY RUN] Would rollback: {record.version}_{record.name}")
                    result = MigrationResult(
                        success=True,
                        version=record.version,
                        name=record.name,
                        execution_time_ms=0,
                    )
                else:
                    result = await self._rollback_migration(migration)

                if not result.success:
                    summary.failed = result
                    break
                summary.rolled_back.append(result)
                summary.total_rolled_back += 1

        return summary

    def _rollback_source(self, record: MigrationRecord, files_by_version: dict[str, MigrationFile]) -> MigrationFile:
        """Find the file to roll ``record`` back with.

        Raises:
            MigrationFileNotFoundError: If the file is gone
            RollbackError: If the file has no down section
        """
        migration = files_by_version.get(record.version)
        if migration is None:
            raise MigrationFileNotFoundError(record.version, record.name)
        if not migration.down_sql:
            raise RollbackError(
                record.version,
                record.name,
                f"no '{catalog.DOWN_MARKER}' section. Cannot rollback without down SQL.",
            )
        return migration

    async def _rollback_migration(self, migration: MigrationFile) -> MigrationResult:
        """Roll back a single migration with transaction safety."""
        self._log.info(f"Rolling back migration: {migration.version} ({migration.name})")
        start_time = time.monotonic()

        async with self._pool.connection() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(migration.down_sql)
                    await self._store.delete(migration.version, conn=conn)
            except Exception as e:
                error = ExecutionError(migration.version, migration.name, "down", e)
                self._log.error(str(error))
                return MigrationResult(
                    success=False,
                    version=migration.version,
                    name=migration.name,
                    execution_time_ms=_elapsed_ms(start_time),
                    error=str(e),
                )

        execution_time_ms = _elapsed_ms(start_time)
        self._log.info(f"Migration {migration.version} rolled back successfully in {execution_time_ms}ms")
        return MigrationResult(
            success=True,
            version=migration.version,
            name=migration.name,
            execution_time_ms=execution_time_ms,
        )

    # -------------------------------------------------------------------------
    # Authoring
    # -------------------------------------------------------------------------

    def create_migration_file(self, name: str) -> CreatedMigration:
        """Create a new templated migration file in the migrations directory.

        Raises:
            MigrationError: If the name sanitizes to nothing
        """
        created = catalog.create_migration_file(self._migrations_dir, name)
        self._log.info(f"Created migration file: {created.path}")
        return created
