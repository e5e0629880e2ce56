"""
Heuristic checks for common migration anti-patterns.

This is a line scanner, not a SQL parser. It reports warnings and errors
for the caller to act on and never blocks execution.

How lines are read:
- ``--`` comments are ignored, both whole-line and trailing.
- Text inside dollar-quoted bodies (``DO $$ ... $$``, ``CREATE FUNCTION ...
  AS $$ ... $$``) is procedural code and is excluded from statement rules,
  so ``RAISE`` or ``BEGIN`` inside a block is not flagged.
- "Missing clause" checks (``IF NOT EXISTS``, ``WHERE``, ``ON CONFLICT``,
  ``CASCADE``) look at the whole statement, from the line the statement
  starts on to the line holding its ``;``.
- Line numbers are 1-based within the section being checked.

Known blind spots: statements whose leading keywords are split across
lines, keywords or ``--`` inside string literals, block comments, named
dollar-quote tags such as ``$fn$``, and ``;`` inside literals.
"""

import re
from dataclasses import dataclass

from pgshift.migrations.models import ValidationWarning

_DOLLAR_QUOTE = "$$"
_DO_BLOCK = re.compile(r"^DO\b")

_CREATE_TABLE = re.compile(r"^CREATE\s+(?:UNLOGGED\s+|TEMP\s+|TEMPORARY\s+)?TABLE\b")
_CREATE_INDEX = re.compile(r"^CREATE\s+(?:UNIQUE\s+)?INDEX\b")
_ADD_COLUMN_UNGUARDED = re.compile(r"\bADD\s+COLUMN\b(?!\s+IF\s+NOT\s+EXISTS\b)")
_RAISE = re.compile(r"^RAISE\b")
_DROP_TABLE = re.compile(r"^DROP\s+TABLE\b")
_DROP_INDEX = re.compile(r"^DROP\s+INDEX\b")
_DROP_COLUMN = re.compile(r"\bDROP\s+COLUMN\b")
_TRUNCATE = re.compile(r"^TRUNCATE\b")
_DELETE_FROM = re.compile(r"^DELETE\s+FROM\b")
_TRANSACTION_CONTROL = re.compile(r"^(BEGIN|COMMIT|ROLLBACK|START\s+TRANSACTION)(\s+(TRANSACTION|WORK))?\s*;?$")
_ALTER_TYPE_ADD_VALUE = re.compile(r"\bALTER\s+TYPE\b.*\bADD\s+VALUE\b")
_ADD_CONSTRAINT = re.compile(r"\bADD\s+CONSTRAINT\b")
_INSERT_INTO = re.compile(r"^INSERT\s+INTO\b")
_DROP_NEEDS_CASCADE = re.compile(r"^DROP\s+(TABLE|SEQUENCE|MATERIALIZED\s+VIEW|VIEW|FUNCTION|TYPE)\b")

_OBJECT_KIND = r"(TABLE|INDEX|MATERIALIZED\s+VIEW|VIEW|SEQUENCE|FUNCTION|TYPE|TRIGGER|SCHEMA|EXTENSION)"
_DROP_OBJECT = re.compile(rf"^DROP\s+{_OBJECT_KIND}\b")
_CREATE_OBJECT = re.compile(
    rf"^CREATE\s+(?:OR\s+REPLACE\s+)?(?:UNIQUE\s+)?(?:UNLOGGED\s+|TEMP\s+|TEMPORARY\s+)?{_OBJECT_KIND}\b"
)
_CONSTRAINT_GUARDS = ("PG_CONSTRAINT", "INFORMATION_SCHEMA", "DUPLICATE_OBJECT")


@dataclass
class _Line:
    number: int
    text: str
    block: int | None = None

    @property
    def outside(self) -> bool:
        return self.block is None


class _Section:
    """A migration section split into uppercase, comment-free lines."""

    def __init__(self, sql: str):
        self.lines: list[_Line] = []
        self.do_blocks: dict[int, list[str]] = {}
        block: int | None = None
        block_count = 0

        for number, raw in enumerate(sql.split("\n"), 1):
            text = raw.split("--", 1)[0].strip().upper()
            if not text:
                continue

            if block is not None:
                self.lines.append(_Line(number, text, block))
                if block in self.do_blocks:
                    self.do_blocks[block].append(text)
                if _DOLLAR_QUOTE in text:
                    block = None
                continue

            # A line that opens a dollar-quoted body still starts outside it.
            self.lines.append(_Line(number, text))
            if text.count(_DOLLAR_QUOTE) % 2 == 1:
                block = block_count
                block_count += 1
                if _DO_BLOCK.match(text):
                    self.do_blocks[block] = [text]

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def statement(self, index: int) -> str:
        """Text of the statement starting at ``self.lines[index]``."""
        parts = []
        for line in self.lines[index:]:
            parts.append(line.text)
            if ";" in line.text:
                break
        return " ".join(parts)

    def constraint_guarded(self, line: _Line) -> bool:
        body = line.text
        if line.block in self.do_blocks:
            body = " ".join(self.do_blocks[line.block])
        return any(guard in body for guard in _CONSTRAINT_GUARDS)


def _warn(warnings: list[ValidationWarning], level: str, line: int, message: str) -> None:
    warnings.append(ValidationWarning(level=level, message=f"Line {line}: {message}", line=line))


def _check_up(section: _Section, label: str, warnings: list[ValidationWarning]) -> None:
    dropped: dict[str, int] = {}
    created: set[str] = set()

    for index, line in enumerate(section.lines):
        text, n = line.text, line.number

        if _ALTER_TYPE_ADD_VALUE.search(text):
            _warn(
                warnings,
                "warning",
                n,
                f"ALTER TYPE ... ADD VALUE cannot run inside a transaction{label}. "
                "This migration may fail. Consider a workaround.",
            )
        if _DROP_COLUMN.search(text):
            _warn(warnings, "warning", n, f"Destructive operation: DROP COLUMN{label}. Data will be permanently lost.")
        # Function bodies are skipped; DO blocks count only when they check the catalog.
        if _ADD_CONSTRAINT.search(text) and (line.outside or line.block in section.do_blocks):
            if not section.constraint_guarded(line):
                _warn(
                    warnings,
                    "warning",
                    n,
                    f"ADD CONSTRAINT without an existence check{label}. "
                    "Wrap it in a DO block that checks pg_constraint first.",
                )

        if not line.outside:
            continue

        statement = section.statement(index)

        if _CREATE_TABLE.match(text) and "IF NOT EXISTS" not in statement:
            _warn(warnings, "error", n, f"CREATE TABLE without IF NOT EXISTS{label}. Use: CREATE TABLE IF NOT EXISTS")
        if _CREATE_INDEX.match(text) and "IF NOT EXISTS" not in statement:
            _warn(
                warnings,
                "warning",
                n,
                f"CREATE INDEX without IF NOT EXISTS{label}. Consider: CREATE INDEX IF NOT EXISTS",
            )
        if _ADD_COLUMN_UNGUARDED.search(text):
            _warn(warnings, "warning", n, f"ADD COLUMN without IF NOT EXISTS{label}. Use: ADD COLUMN IF NOT EXISTS")
        if _RAISE.match(text):
            _warn(warnings, "error", n, f"RAISE outside a DO $$ block{label}. RAISE is only valid in PL/pgSQL.")
        if _DROP_TABLE.match(text):
            if "IF EXISTS" not in statement:
                _warn(warnings, "error", n, f"DROP TABLE without IF EXISTS{label}. Use: DROP TABLE IF EXISTS")
            _warn(
                warnings,
                "warning",
                n,
                f"Destructive operation: DROP TABLE in UP section{label}. Ensure this is intentional.",
            )
        if _TRUNCATE.match(text):
            _warn(warnings, "warning", n, f"Destructive operation: TRUNCATE{label}. All data will be removed.")
        if _DELETE_FROM.match(text) and not re.search(r"\bWHERE\b", statement):
            _warn(warnings, "warning", n, f"DELETE FROM without WHERE clause{label}. This deletes all rows.")
        if _TRANSACTION_CONTROL.match(text):
            keyword = text.rstrip(";").strip()
            _warn(
                warnings,
                "error",
                n,
                f"Do not use {keyword} in migration SQL{label}. "
                "The runner wraps each migration in a transaction automatically.",
            )
        if (match := _DROP_NEEDS_CASCADE.match(text)) and "CASCADE" not in statement:
            kind = " ".join(match.group(1).split())
            _warn(
                warnings,
                "warning",
                n,
                f"DROP {kind} without CASCADE{label}. Dependent objects will make it fail.",
            )
        if _INSERT_INTO.match(text) and "ON CONFLICT" not in statement:
            _warn(
                warnings,
                "warning",
                n,
                f"INSERT INTO without ON CONFLICT{label}. Re-running fails if the rows already exist.",
            )

        if match := _DROP_OBJECT.match(text):
            dropped.setdefault(" ".join(match.group(1).split()), n)
        if match := _CREATE_OBJECT.match(text):
            created.add(" ".join(match.group(1).split()))

    for kind, n in dropped.items():
        if kind in created:
            _warn(
                warnings,
                "warning",
                n,
                f"DROP {kind} and CREATE {kind} in the same migration{label}. "
                f"Prefer an idempotent CREATE {kind} IF NOT EXISTS over dropping and recreating.",
            )


def _check_down(section: _Section, label: str, warnings: list[ValidationWarning]) -> None:
    for index, line in enumerate(section.lines):
        if not line.outside:
            continue
        text, n = line.text, line.number
        statement = section.statement(index)

        if _DROP_TABLE.match(text) and "IF EXISTS" not in statement:
            _warn(
                warnings,
                "error",
                n,
                f"DROP TABLE without IF EXISTS in DOWN section{label}. Use: DROP TABLE IF EXISTS",
            )
        if _DROP_INDEX.match(text) and "IF EXISTS" not in statement:
            _warn(
                warnings,
                "warning",
                n,
                f"DROP INDEX without IF EXISTS in DOWN section{label}. Use: DROP INDEX IF EXISTS",
            )
        if (match := _DROP_NEEDS_CASCADE.match(text)) and "CASCADE" not in statement:
            kind = " ".join(match.group(1).split())
            _warn(
                warnings,
                "warning",
                n,
                f"DROP {kind} without CASCADE in DOWN section{label}. Dependent objects will make it fail.",
            )
        if _TRANSACTION_CONTROL.match(text):
            keyword = text.rstrip(";").strip()
            _warn(
                warnings,
                "error",
                n,
                f"Do not use {keyword} in DOWN section{label}. "
                "The runner wraps rollbacks in a transaction automatically.",
            )
        if _RAISE.match(text):
            _warn(
                warnings,
                "error",
                n,
                f"RAISE outside a DO $$ block in DOWN section{label}. RAISE is only valid in PL/pgSQL.",
            )
        if _ADD_COLUMN_UNGUARDED.search(text):
            _warn(
                warnings,
                "warning",
                n,
                f"ADD COLUMN without IF NOT EXISTS in DOWN section{label}. Use: ADD COLUMN IF NOT EXISTS",
            )


def validate_migration_sql(up_sql: str, down_sql: str, name: str | None = None) -> list[ValidationWarning]:
    """Validate migration SQL for common anti-patterns.

    Args:
        up_sql: The UP (apply) SQL
        down_sql: The DOWN (rollback) SQL
        name: Optional migration name, echoed in every message

    Returns:
        Warnings and errors in section order, UP first
    """
    warnings: list[ValidationWarning] = []
    label = f" ({name})" if name else ""

    up = _Section(up_sql or "")
    if up.is_empty:
        warnings.append(
            ValidationWarning(level="error", message=f"Empty UP section{label}. Migration must contain SQL statements.")
        )
    else:
        _check_up(up, label, warnings)

    down = _Section(down_sql or "")
    if down.is_empty:
        warnings.append(
            ValidationWarning(
                level="warning",
                message=f"Empty DOWN section{label}. Rollback will not be possible for this migration.",
            )
        )
    else:
        _check_down(down, label, warnings)

    return warnings
