"""
Tracking table access.

The tracking table is the only source of truth for which migrations have
been applied. Rows are written and removed inside the same transaction as
the migration SQL itself, so a record never exists for a migration that did
not commit.
"""

import re
from typing import Any, Iterable

from psycopg.rows import dict_row

from pgshift.migrations.exceptions import ConfigurationError
from pgshift.migrations.models import (
    DEFAULT_TABLE_NAME,
    MigrationFile,
    MigrationRecord,
    MigrationState,
    MigrationStatus,
)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def validate_table_name(table_name: str) -> str:
    """Return the table name if it is a plain (optionally schema-qualified) identifier.

    Raises:
        ConfigurationError: For anything that would need quoting
    """
    if not table_name or not _TABLE_NAME_RE.match(table_name):
        raise ConfigurationError(f"Invalid tracking table name: {table_name!r}")
    return table_name


class AppliedRecordStore:
    """Reads and writes migration records in the tracking table."""

    def __init__(self, pool: Any, table_name: str = DEFAULT_TABLE_NAME):
        self._pool = pool
        self.table_name = validate_table_name(table_name)

    async def _create_table(self, conn: Any) -> None:
        await conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                id SERIAL PRIMARY KEY,
                version VARCHAR(14) NOT NULL UNIQUE,
                name VARCHAR(255) NOT NULL,
                applied_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                execution_time_ms INTEGER NOT NULL DEFAULT 0 CHECK (execution_time_ms >= 0),
                checksum VARCHAR(16) NOT NULL
            )
        """)
        await conn.commit()

    async def ensure_table(self) -> None:
        """Create the tracking table if it does not exist yet."""
        async with self._pool.connection() as conn:
            await self._create_table(conn)

    async def list_applied(self) -> list[MigrationRecord]:
        """Return all applied migrations in ascending version order.

        The tracking table is created first, so this is safe on a fresh database.
        """
        async with self._pool.connection() as conn:
            await self._create_table(conn)
            async with conn.cursor(row_factory=dict_row) as cursor:
                await cursor.execute(f"""
                    SELECT id, version, name, applied_at, execution_time_ms, checksum
                    FROM {self.table_name}
                    ORDER BY version ASC
                """)
                rows = await cursor.fetchall()

        return [
            MigrationRecord(
                id=row["id"],
                version=row["version"],
                name=row["name"],
                applied_at=row["applied_at"],
                execution_time_ms=row["execution_time_ms"],
                checksum=row["checksum"],
            )
            for row in rows
        ]

    async def insert(
        self,
        version: str,
        name: str,
        execution_time_ms: int,
        checksum: str,
        conn: Any = None,
    ) -> None:
        """Record a migration as applied.

        When ``conn`` is given the insert joins the caller's transaction;
        otherwise it runs and commits on its own pooled connection. A
        duplicate version raises the driver's unique-violation error.
        """
        query = f"""
            INSERT INTO {self.table_name} (version, name, execution_time_ms, checksum)
            VALUES (%s, %s, %s, %s)
        """
        params = (version, name, max(0, execution_time_ms), checksum)
        if conn is not None:
            await conn.execute(query, params)
            return
        async with self._pool.connection() as own_conn:
            await own_conn.execute(query, params)
            await own_conn.commit()

    async def delete(self, version: str, conn: Any = None) -> None:
        """Remove the record of a migration; a missing version is not an error."""
        query = f"DELETE FROM {self.table_name} WHERE version = %s"
        if conn is not None:
            await conn.execute(query, (version,))
            return
        async with self._pool.connection() as own_conn:
            await own_conn.execute(query, (version,))
            await own_conn.commit()


def build_status(files: Iterable[MigrationFile], applied: Iterable[MigrationRecord]) -> list[MigrationStatus]:
    """Join migration files with their tracking records."""
    records = {record.version: record for record in applied}
    statuses = []
    for file in files:
        record = records.get(file.version)
        if record is None:
            statuses.append(
                MigrationStatus(
                    version=file.version,
                    name=file.name,
                    filename=file.filename,
                    status=MigrationState.PENDING,
                )
            )
            continue
        statuses.append(
            MigrationStatus(
                version=file.version,
                name=file.name,
                filename=file.filename,
                status=MigrationState.APPLIED,
                applied_at=record.applied_at,
                execution_time_ms=record.execution_time_ms,
                checksum=record.checksum,
                checksum_mismatch=record.checksum != file.checksum,
            )
        )
    return statuses


def pending_migrations(files: Iterable[MigrationFile], applied: Iterable[MigrationRecord]) -> list[MigrationFile]:
    """Return the files that have no tracking record, keeping their order."""
    applied_versions = {record.version for record in applied}
    return [file for file in files if file.version not in applied_versions]
