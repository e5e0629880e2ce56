"""
Tests for the MigrationRunner class.

Tests cover:
- Migration execution and idempotence
- Partial failure handling
- Rollback functionality
- Dry runs
- Status reporting and checksum validation
- Locking mechanism
"""

import pytest

from pgshift.migrations.catalog import compute_checksum
from pgshift.migrations.exceptions import ConfigurationError, LockError
from pgshift.migrations.factory import runner_from_pool
from pgshift.migrations.models import MigrationConfig, MigrationState
from pgshift.migrations.runner import MigrationRunner

FIRST = "20260214110000"
SECOND = "20260214120000"
THIRD = "20260214130000"


@pytest.fixture
def two_migrations(write):
    write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);", "DROP TABLE IF EXISTS first CASCADE;")
    write(SECOND, "second", "CREATE TABLE IF NOT EXISTS second (id INT);", "DROP TABLE IF EXISTS second CASCADE;")


@pytest.fixture
def three_migrations(two_migrations, write):
    write(THIRD, "third", "CREATE TABLE IF NOT EXISTS third (id INT);", "DROP TABLE IF EXISTS third CASCADE;")


class TestConstruction:
    def test_requires_pool(self, migrations_dir):
        with pytest.raises(ConfigurationError):
            MigrationRunner(MigrationConfig(pool=None, migrations_dir=migrations_dir))

    def test_rejects_object_without_connection(self, migrations_dir):
        with pytest.raises(ConfigurationError):
            MigrationRunner(MigrationConfig(pool=object(), migrations_dir=migrations_dir))

    def test_rejects_invalid_table_name(self, make_runner):
        with pytest.raises(ConfigurationError):
            make_runner(table_name="schema migrations")

    def test_defaults(self, make_runner, migrations_dir):
        runner = make_runner()
        assert runner.table_name == "schema_migrations"
        assert runner.lock_id == 741953
        assert runner.migrations_dir == migrations_dir

    def test_runner_from_pool(self, fake_pool, migrations_dir):
        runner = runner_from_pool(fake_pool, migrations_dir)
        assert runner.migrations_dir == migrations_dir
        assert runner.table_name == "schema_migrations"

    def test_runner_from_pool_default_directory(self, fake_pool, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        runner = runner_from_pool(fake_pool)
        assert runner.migrations_dir == tmp_path / "models" / "migrations"

    @pytest.mark.asyncio
    async def test_runner_from_pool_does_not_lock(self, fake_pool, fake_db, migrations_dir, two_migrations):
        runner = runner_from_pool(fake_pool, migrations_dir)
        summary = await runner.migrate()
        assert summary.total_applied == 2
        assert fake_db.lock_attempts == 0


class TestMigrate:
    @pytest.mark.asyncio
    async def test_undecodable_file_does_not_block_others(self, make_runner, fake_db, write, migrations_dir):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);", "DROP TABLE IF EXISTS first CASCADE;")
        (migrations_dir / f"{SECOND}_second.sql").write_bytes(b"-- migrate:up\nSELECT '\xff';\n")

        summary = await make_runner().migrate()

        assert summary.total_applied == 1
        assert summary.failed is None
        assert fake_db.versions == [FIRST]

    @pytest.mark.asyncio
    async def test_applies_all_in_version_order(self, make_runner, fake_db, two_migrations):
        runner = make_runner()

        summary = await runner.migrate()

        assert summary.total_pending == 2
        assert summary.total_applied == 2
        assert summary.failed is None
        assert summary.dry_run is False
        assert [r.version for r in summary.applied] == [FIRST, SECOND]
        assert all(r.success for r in summary.applied)
        assert fake_db.versions == [FIRST, SECOND]
        assert fake_db.records[FIRST]["id"] < fake_db.records[SECOND]["id"]
        assert "first (id INT)" in fake_db.executed[0]
        assert "second (id INT)" in fake_db.executed[1]

    @pytest.mark.asyncio
    async def test_records_name_and_checksum(self, make_runner, fake_db, two_migrations):
        await make_runner().migrate()

        record = fake_db.records[FIRST]
        assert record["name"] == "first"
        assert record["checksum"] == compute_checksum("CREATE TABLE IF NOT EXISTS first (id INT);")
        assert record["execution_time_ms"] >= 0

    @pytest.mark.asyncio
    async def test_each_migration_has_its_own_transaction(self, make_runner, fake_db, three_migrations):
        await make_runner().migrate()
        assert fake_db.transactions == 3

    @pytest.mark.asyncio
    async def test_idempotent(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()
        executed = len(fake_db.executed)

        summary = await runner.migrate()

        assert summary.total_pending == 0
        assert summary.total_applied == 0
        assert summary.applied == []
        assert len(fake_db.executed) == executed

    @pytest.mark.asyncio
    async def test_nothing_pending_takes_no_lock(self, make_runner, fake_db):
        summary = await make_runner().migrate()

        assert summary.total_pending == 0
        assert fake_db.lock_attempts == 0
        assert fake_db.table_exists

    @pytest.mark.asyncio
    async def test_applies_only_new_files(self, make_runner, fake_db, two_migrations, write):
        runner = make_runner()
        await runner.migrate()
        write(THIRD, "third", "CREATE TABLE IF NOT EXISTS third (id INT);")

        summary = await runner.migrate()

        assert [r.version for r in summary.applied] == [THIRD]
        assert fake_db.versions == [FIRST, SECOND, THIRD]

    @pytest.mark.asyncio
    async def test_failure_stops_batch(self, make_runner, fake_db, write):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);")
        write(SECOND, "second", "CREATE TABLE IF NOT EXISTS second (id INT) BROKEN;")
        fake_db.fail_on.add("BROKEN")

        summary = await make_runner().migrate()

        assert summary.total_applied == 1
        assert summary.failed is not None
        assert summary.failed.version == SECOND
        assert summary.failed.success is False
        assert 'syntax error at or near "BROKEN"' in summary.failed.error
        assert fake_db.versions == [FIRST]
        assert fake_db.rollbacks == 1

    @pytest.mark.asyncio
    async def test_partial_failure_leaves_later_migrations_pending(self, make_runner, fake_db, three_migrations):
        fake_db.fail_on.add("second (id INT)")
        runner = make_runner()

        summary = await runner.migrate()

        assert [r.version for r in summary.applied] == [FIRST]
        assert summary.failed.version == SECOND
        assert fake_db.versions == [FIRST]
        assert not any("third" in sql for sql in fake_db.executed)
        pending = await runner.get_pending_migrations()
        assert [m.version for m in pending] == [SECOND, THIRD]

    @pytest.mark.asyncio
    async def test_failure_logs_execution_error(self, make_runner, fake_db, recording_logger, two_migrations):
        fake_db.fail_on.add("second (id INT)")

        await make_runner(logger=recording_logger).migrate()

        errors = recording_logger.at("error")
        assert len(errors) == 1
        assert f"Migration {SECOND}_second failed (up)" in errors[0]

    @pytest.mark.asyncio
    async def test_duplicate_record_fails_migration(self, make_runner, fake_db, two_migrations, monkeypatch):
        runner = make_runner()
        # Another process recorded FIRST between the status query and the insert.
        original = runner.get_pending_migrations

        async def stale_pending():
            pending = await original()
            fake_db.add_record(FIRST, "first", "x" * 16)
            return pending

        monkeypatch.setattr(runner, "get_pending_migrations", stale_pending)

        summary = await runner.migrate()

        assert summary.total_applied == 0
        assert summary.failed.version == FIRST
        assert "duplicate key" in summary.failed.error
        assert fake_db.versions == [FIRST]
        assert fake_db.records[FIRST]["checksum"] == "x" * 16

    @pytest.mark.asyncio
    async def test_connections_are_released(self, make_runner, fake_pool, fake_db, three_migrations):
        fake_db.fail_on.add("third (id INT)")

        await make_runner().migrate()

        assert fake_pool.active == 0
        assert fake_pool.max_active <= 2


class TestDryRun:
    @pytest.mark.asyncio
    async def test_migrate_dry_run(self, make_runner, fake_pool, fake_db, two_migrations):
        runner = make_runner()
        checkouts_before = fake_pool.checkouts

        summary = await runner.migrate(dry_run=True)

        assert summary.dry_run is True
        assert summary.total_pending == 2
        assert summary.total_applied == 2
        assert [r.version for r in summary.applied] == [FIRST, SECOND]
        assert all(r.execution_time_ms == 0 for r in summary.applied)
        assert fake_db.records == {}
        assert fake_db.executed == []
        assert fake_db.transactions == 0
        assert fake_db.lock_attempts == 0
        # ensure_table plus the status query
        assert fake_pool.checkouts - checkouts_before == 2

    @pytest.mark.asyncio
    async def test_rollback_dry_run(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()
        executed = len(fake_db.executed)
        transactions = fake_db.transactions

        summary = await runner.rollback(2, dry_run=True)

        assert summary.dry_run is True
        assert summary.total_rolled_back == 2
        assert [r.version for r in summary.rolled_back] == [SECOND, FIRST]
        assert fake_db.versions == [FIRST, SECOND]
        assert len(fake_db.executed) == executed
        assert fake_db.transactions == transactions

    @pytest.mark.asyncio
    async def test_rollback_dry_run_reports_missing_down(self, make_runner, fake_db, write):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);")
        runner = make_runner()
        await runner.migrate()

        summary = await runner.rollback(1, dry_run=True)

        assert summary.total_rolled_back == 0
        assert summary.failed.version == FIRST
        assert "down" in summary.failed.error
        assert fake_db.versions == [FIRST]


class TestRollback:
    @pytest.mark.asyncio
    async def test_rollback_last(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()

        summary = await runner.rollback()

        assert summary.total_rolled_back == 1
        assert summary.failed is None
        assert summary.rolled_back[0].version == SECOND
        assert fake_db.versions == [FIRST]
        assert "DROP TABLE IF EXISTS second" in fake_db.executed[-1]

    @pytest.mark.asyncio
    async def test_rollback_order_is_most_recent_first(self, make_runner, fake_db, three_migrations):
        runner = make_runner()
        await runner.migrate()

        summary = await runner.rollback(3)

        versions = [r.version for r in summary.rolled_back]
        assert versions == [THIRD, SECOND, FIRST]
        assert versions == sorted(versions, reverse=True)
        assert fake_db.versions == []

    @pytest.mark.asyncio
    async def test_rollback_more_than_applied(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()

        summary = await runner.rollback(10)

        assert summary.total_rolled_back == 2
        assert fake_db.versions == []

    @pytest.mark.asyncio
    async def test_rollback_nothing_applied(self, make_runner, fake_db, two_migrations):
        summary = await make_runner().rollback()

        assert summary.total_rolled_back == 0
        assert summary.failed is None
        assert fake_db.lock_attempts == 0

    @pytest.mark.asyncio
    async def test_rollback_count_must_be_positive(self, make_runner):
        with pytest.raises(ValueError):
            await make_runner().rollback(0)

    @pytest.mark.asyncio
    async def test_missing_file(self, make_runner, fake_db):
        fake_db.add_record(FIRST, "first", "a" * 16)

        summary = await make_runner().rollback(1)

        assert summary.total_rolled_back == 0
        assert summary.failed.version == FIRST
        assert "file not found" in summary.failed.error
        assert fake_db.versions == [FIRST]
        assert fake_db.executed == []

    @pytest.mark.asyncio
    async def test_missing_down_section_stops_batch(self, make_runner, fake_db, write):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);", "DROP TABLE IF EXISTS first CASCADE;")
        write(SECOND, "second", "CREATE TABLE IF NOT EXISTS second (id INT);")
        write(THIRD, "third", "CREATE TABLE IF NOT EXISTS third (id INT);", "DROP TABLE IF EXISTS third CASCADE;")
        runner = make_runner()
        await runner.migrate()

        summary = await runner.rollback(3)

        assert [r.version for r in summary.rolled_back] == [THIRD]
        assert summary.failed.version == SECOND
        assert "Cannot rollback" in summary.failed.error
        assert fake_db.versions == [FIRST, SECOND]

    @pytest.mark.asyncio
    async def test_failed_down_sql_keeps_record(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()
        fake_db.fail_on.add("DROP TABLE IF EXISTS second")

        summary = await runner.rollback(2)

        assert summary.total_rolled_back == 0
        assert summary.failed.version == SECOND
        assert fake_db.versions == [FIRST, SECOND]
        assert fake_db.rollbacks == 1

    @pytest.mark.asyncio
    async def test_reapply_after_rollback(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()
        await runner.rollback(1)

        summary = await runner.migrate()

        assert [r.version for r in summary.applied] == [SECOND]
        assert fake_db.versions == [FIRST, SECOND]


class TestLocking:
    @pytest.mark.asyncio
    async def test_lock_held_during_migrations(self, make_runner, fake_db, two_migrations):
        await make_runner().migrate()

        assert fake_db.lock_attempts == 1
        assert fake_db.locked_during == [True, True]
        assert fake_db.lock_holder is None

    @pytest.mark.asyncio
    async def test_lock_contention_aborts_migrate(self, make_runner, fake_db, two_migrations):
        fake_db.lock_holder = "other-process"

        with pytest.raises(LockError) as exc_info:
            await make_runner(lock_id=99).migrate()

        assert exc_info.value.lock_id == 99
        assert fake_db.executed == []
        assert fake_db.records == {}
        assert fake_db.lock_holder == "other-process"

    @pytest.mark.asyncio
    async def test_lock_contention_aborts_rollback(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()
        fake_db.lock_holder = "other-process"

        with pytest.raises(LockError):
            await runner.rollback(1)

        assert fake_db.versions == [FIRST, SECOND]

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, make_runner, fake_db, two_migrations):
        fake_db.fail_on.add("first (id INT)")

        summary = await make_runner().migrate()

        assert summary.failed.version == FIRST
        assert fake_db.unlock_calls == 1
        assert fake_db.lock_holder is None

    @pytest.mark.asyncio
    async def test_release_failure_does_not_fail_batch(self, make_runner, fake_db, recording_logger, two_migrations):
        fake_db.unlock_error = RuntimeError("connection reset")

        summary = await make_runner(logger=recording_logger).migrate()

        assert summary.total_applied == 2
        assert any("connection reset" in m for m in recording_logger.at("warning"))

    @pytest.mark.asyncio
    async def test_lock_disabled(self, make_runner, fake_db, two_migrations):
        fake_db.lock_holder = "other-process"

        summary = await make_runner(use_lock=False).migrate()

        assert summary.total_applied == 2
        assert fake_db.lock_attempts == 0

    @pytest.mark.asyncio
    async def test_dry_run_ignores_held_lock(self, make_runner, fake_db, two_migrations):
        fake_db.lock_holder = "other-process"

        summary = await make_runner().migrate(dry_run=True)

        assert summary.total_applied == 2
        assert fake_db.lock_attempts == 0


class TestStatus:
    @pytest.mark.asyncio
    async def test_status_and_counts(self, make_runner, fake_db, three_migrations):
        fake_db.add_record(FIRST, "first", compute_checksum("CREATE TABLE IF NOT EXISTS first (id INT);"))
        runner = make_runner()

        statuses = await runner.get_status()
        counts = await runner.get_summary_counts()

        assert [s.status for s in statuses] == [
            MigrationState.APPLIED,
            MigrationState.PENDING,
            MigrationState.PENDING,
        ]
        assert statuses[0].checksum_mismatch is False
        assert (counts.applied, counts.pending, counts.total) == (1, 2, 3)
        assert await runner.has_pending_migrations()

    @pytest.mark.asyncio
    async def test_no_pending_after_migrate(self, make_runner, two_migrations):
        runner = make_runner()
        await runner.migrate()
        assert not await runner.has_pending_migrations()

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, make_runner, fake_db, write):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT, edited BOOLEAN);")
        fake_db.add_record(FIRST, "first", "aaa")
        runner = make_runner()

        (status,) = await runner.get_status()

        assert status.status is MigrationState.APPLIED
        assert status.status.value == "applied"
        assert status.checksum_mismatch is True
        assert status.checksum == "aaa"

    @pytest.mark.asyncio
    async def test_checksum_mismatch_does_not_block_migrate(self, make_runner, fake_db, two_migrations):
        fake_db.add_record(FIRST, "first", "aaa")

        summary = await make_runner().migrate()

        assert [r.version for r in summary.applied] == [SECOND]

    @pytest.mark.asyncio
    async def test_validate_checksums(self, make_runner, fake_db, recording_logger, two_migrations):
        fake_db.add_record(FIRST, "first", "aaa")
        fake_db.add_record(SECOND, "second", compute_checksum("CREATE TABLE IF NOT EXISTS second (id INT);"))

        mismatches = await make_runner(logger=recording_logger).validate_checksums()

        assert len(mismatches) == 1
        assert mismatches[0].version == FIRST
        assert mismatches[0].expected == "aaa"
        assert mismatches[0].actual == compute_checksum("CREATE TABLE IF NOT EXISTS first (id INT);")
        assert len(recording_logger.at("warning")) == 1

    @pytest.mark.asyncio
    async def test_list_files_and_applied(self, make_runner, fake_db, two_migrations):
        runner = make_runner()
        await runner.migrate()

        assert [f.version for f in runner.list_files()] == [FIRST, SECOND]
        assert [r.version for r in await runner.list_applied()] == [FIRST, SECOND]


class TestValidateFiles:
    def test_validate_files(self, make_runner, write):
        write(FIRST, "first", "CREATE TABLE IF NOT EXISTS first (id INT);", "DROP TABLE IF EXISTS first CASCADE;")
        write(SECOND, "second", "CREATE TABLE second (id INT);", "DROP TABLE IF EXISTS second CASCADE;")

        results = make_runner().validate_files()

        assert list(results) == [f"{SECOND}_second.sql"]
        assert results[f"{SECOND}_second.sql"][0].level == "error"


class TestCreateMigrationFile:
    def test_create(self, make_runner, migrations_dir):
        runner = make_runner()

        created = runner.create_migration_file("Add Orders")

        assert created.path.parent == migrations_dir
        assert created.filename.endswith("_add_orders.sql")
        assert len(created.version) == 14
        assert [f.filename for f in runner.list_files()] == [created.filename]
