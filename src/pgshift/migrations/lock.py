"""
PostgreSQL advisory lock used to keep migration batches from overlapping.

Advisory locks are session-level: they belong to the connection that took
them and are released automatically when that connection closes. The lock
is therefore taken and released on one dedicated connection that is kept
checked out for the whole batch, separate from the connections that run the
migration transactions.

Acquisition never waits. If another session holds the lock, :class:`LockError`
is raised immediately and the caller decides whether to retry later.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from psycopg.rows import dict_row

from pgshift.migrations.exceptions import LockError
from pgshift.migrations.logger import MigrationLogger, SilentLogger
from pgshift.migrations.models import DEFAULT_LOCK_ID


async def acquire_lock(conn: Any, lock_id: int = DEFAULT_LOCK_ID, log: MigrationLogger | None = None) -> None:
    """Try once to take the advisory lock on ``conn``.

    Raises:
        LockError: If another session holds the lock
    """
    log = log or SilentLogger()
    log.debug(f"Attempting to acquire advisory lock (ID: {lock_id})...")

    async with conn.cursor(row_factory=dict_row) as cursor:
        await cursor.execute("SELECT pg_try_advisory_lock(%s) AS acquired", (lock_id,))
        row = await cursor.fetchone()
    # The lock outlives the transaction; don't leave the session idle in one.
    await conn.commit()

    if not row or not row["acquired"]:
        raise LockError(lock_id)

    log.debug(f"Advisory lock acquired (ID: {lock_id}).")


async def release_lock(conn: Any, lock_id: int = DEFAULT_LOCK_ID, log: MigrationLogger | None = None) -> None:
    """Release the advisory lock held by ``conn``.

    Failures are logged and swallowed: the lock disappears with the session anyway.
    """
    log = log or SilentLogger()
    try:
        await conn.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
        await conn.commit()
        log.debug(f"Advisory lock released (ID: {lock_id}).")
    except Exception as e:
        log.warning(f"Failed to release advisory lock (ID: {lock_id}): {e}")


@asynccontextmanager
async def advisory_lock(
    pool: Any,
    lock_id: int = DEFAULT_LOCK_ID,
    log: MigrationLogger | None = None,
) -> AsyncIterator[Any]:
    """Hold the advisory lock on a dedicated pooled connection for the duration of the block.

    Raises:
        LockError: If the lock is already held elsewhere; the block does not run
    """
    async with pool.connection() as conn:
        await acquire_lock(conn, lock_id, log)
        try:
            yield conn
        finally:
            await release_lock(conn, lock_id, log)
