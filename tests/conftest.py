"""
Shared fixtures.

The migration engine only talks to PostgreSQL through a pool's
``connection()`` context manager, so most tests run against the in-memory
fakes below. They understand exactly the statements the engine issues against
the tracking table and the advisory lock; every other statement is treated as
migration SQL and recorded in ``FakeDatabase.executed``.
"""

import copy
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import psycopg.errors
import pytest

from pgshift.migrations.logger import SilentLogger
from pgshift.migrations.models import DEFAULT_TABLE_NAME, MigrationConfig
from pgshift.migrations.runner import MigrationRunner


def _normalize(query: str) -> str:
    return " ".join(query.split()).upper()


class FakeDatabase:
    """State shared by every connection of a FakePool."""

    def __init__(self, table_name: str = DEFAULT_TABLE_NAME):
        self.table_name = table_name.upper()
        self.table_exists = False
        self.records: dict[str, dict] = {}
        self.next_id = 1
        # Migration SQL in execution order, including statements that later rolled back
        self.executed: list[str] = []
        # Whether the advisory lock was held when each statement in ``executed`` ran
        self.locked_during: list[bool] = []
        self.fail_on: set[str] = set()
        self.lock_holder: str | None = None
        self.lock_attempts = 0
        self.unlock_calls = 0
        self.unlock_error: Exception | None = None
        self.transactions = 0
        self.rollbacks = 0
        self.commits = 0

    def add_record(self, version: str, name: str, checksum: str, execution_time_ms: int = 5) -> None:
        self.records[version] = {
            "id": self.next_id,
            "version": version,
            "name": name,
            "applied_at": datetime.now(UTC),
            "execution_time_ms": execution_time_ms,
            "checksum": checksum,
        }
        self.next_id += 1

    def sorted_records(self) -> list[dict]:
        return [self.records[v] for v in sorted(self.records)]

    @property
    def versions(self) -> list[str]:
        return sorted(self.records)


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self._rows: list[dict] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, query: str, params=None):
        db = self._conn.db
        q = _normalize(query)
        if "PG_TRY_ADVISORY_LOCK" in q:
            db.lock_attempts += 1
            if db.lock_holder is None or db.lock_holder == self._conn.session:
                db.lock_holder = self._conn.session
                self._rows = [{"acquired": True}]
            else:
                self._rows = [{"acquired": False}]
        elif q.startswith("SELECT") and f"FROM {db.table_name}" in q:
            self._rows = [dict(r) for r in db.sorted_records()]
        else:
            raise AssertionError(f"Unexpected cursor query: {query}")

    async def fetchone(self):
        return self._rows[0] if self._rows else None

    async def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, db: FakeDatabase, session: str):
        self.db = db
        self.session = session

    def cursor(self, row_factory=None):
        return FakeCursor(self)

    async def execute(self, query: str, params=None):
        db = self.db
        q = _normalize(query)
        table = db.table_name

        if q.startswith(f"CREATE TABLE IF NOT EXISTS {table} "):
            db.table_exists = True
        elif "PG_ADVISORY_UNLOCK" in q:
            db.unlock_calls += 1
            if db.unlock_error is not None:
                raise db.unlock_error
            if db.lock_holder == self.session:
                db.lock_holder = None
        elif q.startswith(f"INSERT INTO {table} "):
            version, name, execution_time_ms, checksum = params
            if version in db.records:
                raise psycopg.errors.UniqueViolation(
                    f'duplicate key value violates unique constraint "{db.table_name.lower()}_version_key"'
                )
            db.add_record(version, name, checksum, execution_time_ms)
        elif q.startswith(f"DELETE FROM {table} "):
            db.records.pop(params[0], None)
        else:
            db.executed.append(query)
            db.locked_during.append(db.lock_holder is not None)
            for marker in db.fail_on:
                if marker in query:
                    raise psycopg.errors.SyntaxError(f'syntax error at or near "{marker}"')

    async def commit(self):
        self.db.commits += 1

    @asynccontextmanager
    async def transaction(self):
        db = self.db
        snapshot = copy.deepcopy(db.records)
        db.transactions += 1
        try:
            yield self
        except Exception:
            db.records = snapshot
            db.rollbacks += 1
            raise


class FakePool:
    def __init__(self, db: FakeDatabase):
        self.db = db
        self.checkouts = 0
        self.active = 0
        self.max_active = 0
        self.closed = False

    @asynccontextmanager
    async def connection(self):
        self.checkouts += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            yield FakeConnection(self.db, f"session-{self.checkouts}")
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


class RecordingLogger:
    """Collects (level, message) pairs."""

    def __init__(self):
        self.messages: list[tuple[str, str]] = []

    def info(self, msg, *args, **kwargs):
        self.messages.append(("info", msg))

    def warning(self, msg, *args, **kwargs):
        self.messages.append(("warning", msg))

    def error(self, msg, *args, **kwargs):
        self.messages.append(("error", msg))

    def debug(self, msg, *args, **kwargs):
        self.messages.append(("debug", msg))

    def at(self, level: str) -> list[str]:
        return [m for lvl, m in self.messages if lvl == level]


def write_migration(directory: Path, version: str, name: str, up_sql: str, down_sql: str | None = None) -> Path:
    """Write a migration file and return its path."""
    content = f"-- migrate:up\n{up_sql}\n"
    if down_sql is not None:
        content += f"\n-- migrate:down\n{down_sql}\n"
    path = directory / f"{version}_{name}.sql"
    path.write_text(content)
    return path


@pytest.fixture(scope="session", autouse=True)
def _quiet_psycopg_logging():
    for name in ("psycopg", "psycopg.pool"):
        logging.getLogger(name).setLevel(logging.ERROR)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_pool(fake_db):
    return FakePool(fake_db)


@pytest.fixture
def make_pool():
    """Factory for a fake pool over a tracking table with a custom name."""

    def _make(table_name: str = DEFAULT_TABLE_NAME) -> FakePool:
        return FakePool(FakeDatabase(table_name))

    return _make


@pytest.fixture
def migrations_dir(tmp_path):
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def recording_logger():
    return RecordingLogger()


@pytest.fixture
def make_runner(fake_pool, migrations_dir):
    """Factory for runners over the fake pool; keyword arguments go to MigrationConfig."""

    def _make(**kwargs):
        kwargs.setdefault("migrations_dir", migrations_dir)
        kwargs.setdefault("logger", SilentLogger())
        return MigrationRunner(MigrationConfig(pool=fake_pool, **kwargs))

    return _make


@pytest.fixture
def write(migrations_dir):
    """Write a migration into the temporary migrations directory."""

    def _write(version: str, name: str, up_sql: str, down_sql: str | None = None) -> Path:
        return write_migration(migrations_dir, version, name, up_sql, down_sql)

    return _write
