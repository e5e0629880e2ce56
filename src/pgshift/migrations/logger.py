"""
Logger capability consumed by the migration runner.

Any object with ``info``, ``warning``, ``error`` and ``debug`` methods works,
including a standard :class:`logging.Logger`. :class:`SilentLogger` is the
explicit no-op variant for silent operation.
"""

from typing import Any, Protocol, runtime_checkable

from pgshift.config.logging_config import get_logger


@runtime_checkable
class MigrationLogger(Protocol):
    def info(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None: ...

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None: ...


class SilentLogger:
    """A logger that discards all output."""

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        pass


def default_logger() -> MigrationLogger:
    return get_logger("pgshift.migrations")
