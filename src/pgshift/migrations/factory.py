"""
Construction helpers for MigrationRunner.

``create_migration_runner`` resolves connection settings from the environment
and opens a small dedicated pool. ``runner_from_pool`` keeps the older
"pool plus directory" call shape working.
"""

from pathlib import Path
from typing import Any

from psycopg_pool import AsyncConnectionPool

from pgshift.config.environment import Environment
from pgshift.config.logging_config import get_logger
from pgshift.migrations.logger import MigrationLogger, default_logger
from pgshift.migrations.models import MigrationConfig
from pgshift.migrations.runner import MigrationRunner

log = get_logger(__name__)

# Migrations need at most one lock connection and one execution connection at a time
POOL_MIN_SIZE = 1
POOL_MAX_SIZE = 2
POOL_TIMEOUT = 10.0
POOL_MAX_IDLE = 60.0

LEGACY_MIGRATIONS_DIR = Path("models") / "migrations"


def runner_from_pool(pool: Any, migrations_dir: Path | str | None = None) -> MigrationRunner:
    """Build a runner the way the legacy ``(pool, migrations_dir)`` call did.

    Advisory locking is disabled and the directory defaults to
    ``./models/migrations``.
    """
    return MigrationRunner(
        MigrationConfig(
            pool=pool,
            migrations_dir=Path(migrations_dir) if migrations_dir else Path.cwd() / LEGACY_MIGRATIONS_DIR,
            use_lock=False,
        )
    )


async def create_migration_runner(
    database_url: str | None = None,
    migrations_dir: Path | str | None = None,
    table_name: str | None = None,
    lock_id: int | None = None,
    use_lock: bool | None = None,
    logger: MigrationLogger | None = None,
) -> tuple[MigrationRunner, AsyncConnectionPool]:
    """Create a MigrationRunner backed by a fresh connection pool.

    Every argument left as None falls back to the environment (see
    :class:`~pgshift.config.environment.Environment`). The caller owns the
    returned pool and must close it.

    Returns:
        Tuple of (runner, pool)
    """
    conninfo = Environment.build_conninfo(database_url)
    pool = AsyncConnectionPool(
        conninfo,
        min_size=POOL_MIN_SIZE,
        max_size=POOL_MAX_SIZE,
        timeout=POOL_TIMEOUT,
        max_idle=POOL_MAX_IDLE,
        open=False,
    )
    await pool.open()
    log.debug(f"Opened migration pool (max_size={POOL_MAX_SIZE})")

    config = MigrationConfig(
        pool=pool,
        migrations_dir=Path(migrations_dir) if migrations_dir else Environment.get_migrations_dir(),
        table_name=table_name or Environment.get_table_name(),
        lock_id=lock_id if lock_id is not None else Environment.get_lock_id(),
        use_lock=use_lock if use_lock is not None else Environment.get_use_lock(),
        logger=logger or default_logger(),
    )
    try:
        runner = MigrationRunner(config)
    except Exception:
        await pool.close()
        raise
    return runner, pool
