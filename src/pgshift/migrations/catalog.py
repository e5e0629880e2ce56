"""
Migration file catalog.

Discovers ``YYYYMMDDHHMMSS_snake_case_name.sql`` files, splits them into
up/down sections and computes the checksums used for drift detection.

File format::

    -- migrate:up
    CREATE TABLE IF NOT EXISTS example (...);

    -- migrate:down
    DROP TABLE IF EXISTS example;
"""

import hashlib
import re
from datetime import UTC, datetime
from pathlib import Path

from pgshift.migrations.exceptions import MigrationError, ParseError
from pgshift.migrations.logger import MigrationLogger, default_logger
from pgshift.migrations.models import CreatedMigration, MigrationFile

MIGRATION_FILENAME_RE = re.compile(r"^(\d{14})_([a-z0-9_]+)\.sql$")
UP_MARKER = "-- migrate:up"
DOWN_MARKER = "-- migrate:down"
MAX_NAME_LENGTH = 100

MIGRATION_TEMPLATE = """\
-- Migration: {title}
-- Version: {version}
-- Created: {created}
--
-- Rules:
--   1. Use IF NOT EXISTS for CREATE TABLE / CREATE INDEX
--   2. Use IF EXISTS for DROP TABLE / DROP INDEX
--   3. Do not use BEGIN / COMMIT / ROLLBACK; each migration already runs
--      in its own transaction
--   4. One logical change per migration file
--   5. Always write a DOWN section so the migration can be rolled back
--   6. ALTER TYPE ... ADD VALUE cannot run inside a transaction
--   7. Never edit a migration that has already been applied

{up_marker}
-- Write the UP migration SQL here, for example:
--   CREATE TABLE IF NOT EXISTS my_table (
--     id SERIAL PRIMARY KEY,
--     name VARCHAR(255) NOT NULL,
--     created_at TIMESTAMPTZ DEFAULT NOW()
--   );


{down_marker}
-- Write the DOWN (rollback) SQL here, for example:
--   DROP TABLE IF EXISTS my_table CASCADE;

"""


def compute_checksum(sql: str) -> str:
    """Compute the checksum of a migration body.

    Leading and trailing whitespace is ignored.

    Returns:
        The first 16 hex characters of the SHA-256 digest
    """
    return hashlib.sha256(sql.strip().encode("utf-8")).hexdigest()[:16]


def parse_filename(filename: str) -> tuple[str, str] | None:
    """Extract ``(version, name)`` from a migration filename, or None if it does not match."""
    match = MIGRATION_FILENAME_RE.fullmatch(filename)
    if match is None:
        return None
    return match.group(1), match.group(2)


def parse_migration_sections(content: str, filename: str = "<string>") -> tuple[str, str]:
    """Split migration file content into trimmed ``(up_sql, down_sql)``.

    A down marker that appears before the up marker is accepted: the text
    between the two markers becomes the down section and everything after the
    up marker the up section.

    Raises:
        ParseError: If the up marker is missing
    """
    up_index = content.find(UP_MARKER)
    down_index = content.find(DOWN_MARKER)

    if up_index == -1:
        raise ParseError(filename, f"missing '{UP_MARKER}' marker")

    up_start = up_index + len(UP_MARKER)

    if down_index == -1:
        return content[up_start:].strip(), ""

    if down_index > up_index:
        return content[up_start:down_index].strip(), content[down_index + len(DOWN_MARKER) :].strip()

    # TODO: drop the down-before-up ordering once no migration directories rely on it
    down_sql = content[down_index + len(DOWN_MARKER) : up_index].strip()
    return content[up_start:].strip(), down_sql


def load_migration_file(path: Path) -> MigrationFile:
    """Load and parse a single migration file.

    Raises:
        ParseError: If the filename does not match the pattern, the file cannot
            be read as UTF-8, the up marker is missing, or the up section is empty
    """
    parsed = parse_filename(path.name)
    if parsed is None:
        raise ParseError(path.name, "filename does not match YYYYMMDDHHMMSS_name.sql")
    version, name = parsed

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ParseError(path.name, "not valid UTF-8") from None
    except OSError as e:
        raise ParseError(path.name, str(e)) from e
    up_sql, down_sql = parse_migration_sections(content, path.name)
    if not up_sql:
        raise ParseError(path.name, "empty UP section")

    return MigrationFile(
        version=version,
        name=name,
        filename=path.name,
        up_sql=up_sql,
        down_sql=down_sql,
        checksum=compute_checksum(up_sql),
        path=path,
    )


def list_migrations(directory: Path, log: MigrationLogger | None = None) -> list[MigrationFile]:
    """Discover all migration files in a directory, sorted by version.

    Files whose names do not match the migration pattern are ignored. Files
    that match but cannot be parsed are skipped with a warning.

    Returns:
        Parsed migrations in ascending version order; ``[]`` when the
        directory does not exist
    """
    log = log or default_logger()
    directory = Path(directory)
    if not directory.is_dir():
        return []

    migrations = []
    for path in directory.iterdir():
        if not path.is_file() or parse_filename(path.name) is None:
            continue
        try:
            migrations.append(load_migration_file(path))
        except ParseError as e:
            log.warning(f"Skipping {path.name}: {e.reason}")

    migrations.sort(key=lambda m: m.version)
    log.debug(f"Discovered {len(migrations)} migrations in {directory}")
    return migrations


def sanitize_name(name: str) -> str:
    """Turn free text into a snake_case migration name (max 100 chars)."""
    sanitized = re.sub(r"[^a-z0-9]+", "_", name.lower())
    return sanitized.strip("_")[:MAX_NAME_LENGTH]


def generate_version(now: datetime | None = None) -> str:
    """Return a 14-digit YYYYMMDDHHMMSS version for the given (default: current UTC) time."""
    now = now or datetime.now(UTC)
    return now.strftime("%Y%m%d%H%M%S")


def create_migration_file(directory: Path, name: str, now: datetime | None = None) -> CreatedMigration:
    """Write a new, templated migration file.

    Args:
        directory: Target directory, created if missing
        name: Free-text migration name, sanitized to snake_case
        now: Timestamp to derive the version from (default: current UTC time)

    Raises:
        MigrationError: If the name has no alphanumeric characters or the
            file already exists
    """
    sanitized = sanitize_name(name)
    if not sanitized:
        raise MigrationError("Migration name must contain at least one alphanumeric character.")

    now = now or datetime.now(UTC)
    version = generate_version(now)
    filename = f"{version}_{sanitized}.sql"

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename

    content = MIGRATION_TEMPLATE.format(
        title=sanitized.replace("_", " "),
        version=version,
        created=now.isoformat(),
        up_marker=UP_MARKER,
        down_marker=DOWN_MARKER,
    )
    try:
        with path.open("x", encoding="utf-8") as f:
            f.write(content)
    except FileExistsError as e:
        raise MigrationError(f"Migration file already exists: {path}", version, sanitized) from e

    return CreatedMigration(path=path, filename=filename, version=version)
