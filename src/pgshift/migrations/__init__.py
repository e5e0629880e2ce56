"""
PostgreSQL migration system.

Applies and reverses versioned SQL migration files with per-migration
transactions, checksum drift detection, advisory locking, dry runs and
SQL anti-pattern validation.
"""

from pgshift.migrations.catalog import (
    DOWN_MARKER,
    MIGRATION_FILENAME_RE,
    UP_MARKER,
    compute_checksum,
    create_migration_file,
    generate_version,
    list_migrations,
    load_migration_file,
    parse_filename,
    parse_migration_sections,
    sanitize_name,
)
from pgshift.migrations.exceptions import (
    ConfigurationError,
    ExecutionError,
    LockError,
    MigrationError,
    MigrationFileNotFoundError,
    ParseError,
    RollbackError,
)
from pgshift.migrations.factory import create_migration_runner, runner_from_pool
from pgshift.migrations.lock import acquire_lock, advisory_lock, release_lock
from pgshift.migrations.logger import MigrationLogger, SilentLogger
from pgshift.migrations.models import (
    DEFAULT_LOCK_ID,
    DEFAULT_TABLE_NAME,
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
from pgshift.migrations.runner import MigrationRunner
from pgshift.migrations.store import AppliedRecordStore
from pgshift.migrations.validator import validate_migration_sql

__all__ = [
    "DEFAULT_LOCK_ID",
    "DEFAULT_TABLE_NAME",
    "DOWN_MARKER",
    "MIGRATION_FILENAME_RE",
    "UP_MARKER",
    "AppliedRecordStore",
    "ChecksumMismatch",
    "ConfigurationError",
    "CreatedMigration",
    "ExecutionError",
    "LockError",
    "MigrationConfig",
    "MigrationError",
    "MigrationFile",
    "MigrationFileNotFoundError",
    "MigrationLogger",
    "MigrationRecord",
    "MigrationResult",
    "MigrationRollbackSummary",
    "MigrationRunSummary",
    "MigrationRunner",
    "MigrationState",
    "MigrationStatus",
    "MigrationSummary",
    "ParseError",
    "RollbackError",
    "SilentLogger",
    "ValidationWarning",
    "acquire_lock",
    "advisory_lock",
    "compute_checksum",
    "create_migration_file",
    "create_migration_runner",
    "generate_version",
    "list_migrations",
    "load_migration_file",
    "parse_filename",
    "parse_migration_sections",
    "release_lock",
    "runner_from_pool",
    "sanitize_name",
    "validate_migration_sql",
]
