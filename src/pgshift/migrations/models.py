"""
Data types shared by the migration catalog, store and runner.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pgshift.migrations.logger import MigrationLogger, default_logger

DEFAULT_TABLE_NAME = "schema_migrations"
DEFAULT_LOCK_ID = 741953


@dataclass(frozen=True)
class MigrationFile:
    """A migration file parsed from disk.

    Attributes:
        version: 14-digit timestamp version (YYYYMMDDHHMMSS)
        name: snake_case name taken from the filename
        filename: Bare filename, e.g. 20240101120000_create_users.sql
        up_sql: Trimmed body of the up section
        down_sql: Trimmed body of the down section, "" when absent
        checksum: First 16 hex chars of the SHA-256 of ``up_sql``
        path: Location of the file
    """

    version: str
    name: str
    filename: str
    up_sql: str
    down_sql: str
    checksum: str
    path: Path | None = None


@dataclass
class MigrationRecord:
    """A row of the tracking table."""

    id: int
    version: str
    name: str
    applied_at: datetime
    execution_time_ms: int
    checksum: str


class MigrationState(Enum):
    APPLIED = "applied"
    PENDING = "pending"


@dataclass
class MigrationStatus:
    """A migration file joined with its tracking record, if any."""

    version: str
    name: str
    filename: str
    status: MigrationState
    applied_at: datetime | None = None
    execution_time_ms: int | None = None
    checksum: str | None = None
    checksum_mismatch: bool = False


@dataclass
class MigrationResult:
    """Outcome of applying or rolling back a single migration."""

    success: bool
    version: str
    name: str
    execution_time_ms: int
    error: str | None = None


@dataclass
class MigrationRunSummary:
    applied: list[MigrationResult] = field(default_factory=list)
    failed: MigrationResult | None = None
    total_pending: int = 0
    total_applied: int = 0
    dry_run: bool = False


@dataclass
class MigrationRollbackSummary:
    rolled_back: list[MigrationResult] = field(default_factory=list)
    failed: MigrationResult | None = None
    total_rolled_back: int = 0
    dry_run: bool = False


@dataclass
class MigrationSummary:
    applied: int
    pending: int
    total: int


@dataclass
class ValidationWarning:
    level: Literal["error", "warning"]
    message: str
    line: int | None = None


@dataclass
class CreatedMigration:
    path: Path
    filename: str
    version: str


@dataclass
class ChecksumMismatch:
    """An applied migration whose file changed after it was applied."""

    version: str
    name: str
    expected: str
    actual: str


@dataclass
class MigrationConfig:
    """Configuration for :class:`~pgshift.migrations.runner.MigrationRunner`.

    Attributes:
        pool: An open psycopg ``AsyncConnectionPool`` (or anything exposing
            the same ``connection()`` async context manager)
        migrations_dir: Directory containing the ``.sql`` migration files
        table_name: Name of the tracking table, optionally schema-qualified
        lock_id: Advisory lock key shared by every process migrating this database
        use_lock: Hold the advisory lock for the duration of migrate/rollback
        logger: Destination for progress messages; pass ``SilentLogger()`` to mute
    """

    pool: Any
    migrations_dir: Path = field(default_factory=lambda: Path.cwd() / "migrations")
    table_name: str = DEFAULT_TABLE_NAME
    lock_id: int = DEFAULT_LOCK_ID
    use_lock: bool = True
    logger: MigrationLogger = field(default_factory=default_logger)
