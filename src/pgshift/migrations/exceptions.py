"""
Exception classes for the migration system.

Provides specific exception types for different migration failure scenarios.
"""


class MigrationError(Exception):
    """Base exception for migration-related errors."""

    def __init__(
        self,
        message: str,
        migration_version: str | None = None,
        migration_name: str | None = None,
    ):
        self.migration_version = migration_version
        self.migration_name = migration_name
        super().__init__(message)


class ConfigurationError(MigrationError):
    """Raised when the runner is constructed without a usable configuration."""

    pass


class LockError(MigrationError):
    """Raised when the advisory lock is held by another session."""

    def __init__(self, lock_id: int):
        self.lock_id = lock_id
        super().__init__(
            f"Could not acquire migration lock (lock ID: {lock_id}). "
            "Another migration may be in progress. "
            "If no other migration is running, the lock may need manual release."
        )


class ParseError(MigrationError):
    """Raised when a migration file matches the naming pattern but cannot be parsed."""

    def __init__(self, filename: str, reason: str):
        self.filename = filename
        self.reason = reason
        super().__init__(f"Failed to parse migration file '{filename}': {reason}")


class RollbackError(MigrationError):
    """Raised when a migration has no down section to roll back with."""

    def __init__(self, migration_version: str, migration_name: str, reason: str):
        super().__init__(
            f"Cannot rollback migration {migration_version}_{migration_name}: {reason}",
            migration_version,
            migration_name,
        )


class MigrationFileNotFoundError(MigrationError):
    """Raised when an applied migration has no file on disk."""

    def __init__(self, migration_version: str, migration_name: str):
        super().__init__(
            f"Migration file not found for version {migration_version} ({migration_name}). "
            "Cannot rollback without the migration file.",
            migration_version,
            migration_name,
        )


class ExecutionError(MigrationError):
    """Raised when the SQL of a migration fails inside its transaction."""

    def __init__(self, migration_version: str, migration_name: str, direction: str, cause: BaseException):
        self.direction = direction
        self.cause_message = str(cause)
        super().__init__(
            f"Migration {migration_version}_{migration_name} failed ({direction}): {cause}",
            migration_version,
            migration_name,
        )
