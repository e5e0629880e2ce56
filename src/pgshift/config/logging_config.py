"""
Logging setup shared by the library and the command line.

The root logger is configured on first use. Later calls only change the level.

Environment overrides:
- ``PGSHIFT_LOG_LEVEL`` (or ``DEBUG=1``)
- ``PGSHIFT_LOG_FORMAT``
- ``PGSHIFT_LOG_DATEFMT``
- ``NO_COLOR`` disables coloured level names
"""

import logging
import os
import sys
from typing import ClassVar, Optional

PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
COLOR_FORMAT = "\x1b[90m%(asctime)s\x1b[0m | %(levelname_color)s | \x1b[36m%(name)s\x1b[0m | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers; psycopg logs every pool checkout at DEBUG.
QUIET_LOGGERS = ("psycopg", "psycopg.pool")

_configured: str | int | bool = False


def _use_color() -> bool:
    if os.getenv("NO_COLOR") is not None:
        return False
    try:
        return sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


class _LevelColorFormatter(logging.Formatter):
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\x1b[37m",
        "INFO": "\x1b[32m",
        "WARNING": "\x1b[33m",
        "ERROR": "\x1b[31m",
        "CRITICAL": "\x1b[41m",
    }
    RESET: ClassVar[str] = "\x1b[0m"

    def __init__(self, fmt: str, datefmt: str, use_color: bool):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "") if self.use_color else ""
        record.levelname_color = f"{color}{record.levelname}{self.RESET}" if color else record.levelname
        return super().format(record)


def _resolve_format(fmt: Optional[str], use_color: bool) -> str:
    if fmt is not None:
        return fmt
    env_fmt = os.getenv("PGSHIFT_LOG_FORMAT")
    if env_fmt:
        return env_fmt
    return COLOR_FORMAT if use_color else PLAIN_FORMAT


def configure_logging(
    level: Optional[str | int] = None,
    fmt: Optional[str] = None,
    datefmt: Optional[str] = None,
) -> str | int:
    """Configure the root logger and return the effective level.

    Args:
        level: Level name or number; defaults to ``Environment.get_log_level()``
        fmt: Log format; defaults to ``PGSHIFT_LOG_FORMAT`` or a built-in format
        datefmt: Date format; defaults to ``PGSHIFT_LOG_DATEFMT``
    """
    from pgshift.config.environment import Environment

    global _configured

    if level is None:
        level = Environment.get_log_level()
    elif isinstance(level, str):
        level = level.upper()

    if _configured == level:
        return level
    _configured = level

    use_color = _use_color()
    formatter = _LevelColorFormatter(
        fmt=_resolve_format(fmt, use_color),
        datefmt=datefmt or os.getenv("PGSHIFT_LOG_DATEFMT", DATE_FORMAT),
        use_color=use_color,
    )

    root = logging.getLogger()
    if not root.handlers:
        root.addHandler(logging.StreamHandler())
    root.setLevel(level)

    for handler in root.handlers:
        # pytest's capture handlers are left alone
        if type(handler) is logging.StreamHandler:
            handler.setLevel(level)
            handler.setFormatter(formatter)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return level


def get_logger(name: str) -> logging.Logger:
    """Return a logger for ``name``, configuring logging on first use."""
    logger = logging.getLogger(name)
    logger.setLevel(configure_logging())
    return logger
