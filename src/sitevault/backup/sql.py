"""
SQL script helpers for portable database dumps.

Covers both directions of a dump: rendering literal values and identifiers
when writing, and splitting, scanning and normalizing a script before it is
replayed statement by statement.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

# Lock/unlock bracketing around each table's data block
LOCK_STATEMENT = "BEGIN IMMEDIATE;"
UNLOCK_STATEMENT = "COMMIT;"

DEFAULT_IGNORABLE_ERRORS = ("already exists", "duplicate", "UNIQUE constraint failed")

_IDENTIFIER = r'(?:"(?:[^"]|"")+"|`[^`]+`|\[[^\]]+\]|[\w$]+)'
_QUALIFIED = rf"{_IDENTIFIER}(?:\s*\.\s*{_IDENTIFIER})?"

CREATE_TABLE_RE = re.compile(
    rf"^\s*CREATE\s+(?:TEMP(?:ORARY)?\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?({_QUALIFIED})",
    re.IGNORECASE,
)
BARE_DROP_TABLE_RE = re.compile(r"^(\s*DROP\s+TABLE\s+)(?!IF\s+EXISTS\b)", re.IGNORECASE)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for SQLite."""
    return '"' + name.replace('"', '""') + '"'


def unquote_identifier(token: str) -> str:
    """Strip quoting and any schema qualifier from an identifier token."""
    parts = re.findall(_IDENTIFIER, token)
    name = parts[-1] if parts else token.strip()
    if name.startswith('"') and name.endswith('"'):
        return name[1:-1].replace('""', '"')
    if (name.startswith("`") and name.endswith("`")) or (
        name.startswith("[") and name.endswith("]")
    ):
        return name[1:-1]
    return name


def escape_value(value: Any) -> str:
    """
    Render a Python value as an SQL literal.

    ``None`` becomes the bare ``NULL`` keyword and is never quoted. Text
    holding NUL characters is written as a hex blob cast back to TEXT.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            # SQLite has no literal for these; store as NULL like the driver does for NaN
            return "NULL"
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    text = str(value)
    if "\x00" in text:
        # The driver rejects NUL inside statement text
        return "CAST(X'" + text.encode("utf-8").hex().upper() + "' AS TEXT)"
    return "'" + text.replace("'", "''") + "'"


def render_insert(table: str, columns: Sequence[str], row: Sequence[Any]) -> str:
    """Render one INSERT statement for a single row."""
    column_list = ", ".join(quote_identifier(c) for c in columns)
    values = ", ".join(escape_value(v) for v in row)
    return f"INSERT INTO {quote_identifier(table)} ({column_list}) VALUES ({values});"


def split_statements(script: str) -> list[str]:
    """
    Split a script into statements on ``;`` outside quotes and comments.

    Comments are dropped. Trigger bodies (``CREATE TRIGGER ... END;``) stay
    in one statement. Returned statements have no trailing semicolon.
    """
    statements: list[str] = []
    buffer: list[str] = []
    quote: str | None = None
    i = 0
    length = len(script)

    while i < length:
        char = script[i]

        if quote is not None:
            buffer.append(char)
            if char == quote:
                if quote != "]" and i + 1 < length and script[i + 1] == quote:
                    buffer.append(script[i + 1])
                    i += 2
                    continue
                quote = None
            i += 1
            continue

        if char in ("'", '"', "`"):
            quote = char
            buffer.append(char)
        elif char == "[":
            quote = "]"
            buffer.append(char)
        elif char == "-" and script.startswith("--", i):
            newline = script.find("\n", i)
            i = length if newline == -1 else newline
            continue
        elif char == "/" and script.startswith("/*", i):
            end = script.find("*/", i + 2)
            i = length if end == -1 else end + 2
            buffer.append(" ")
            continue
        elif char == ";":
            buffer.append(char)
            statement = "".join(buffer)
            # CASE ... END inside a trigger body must not close the trigger
            if sqlite3.complete_statement(statement):
                statement = statement.strip()[:-1].strip()
                if statement:
                    statements.append(statement)
                buffer = []
        else:
            buffer.append(char)
        i += 1

    tail = "".join(buffer).strip()
    if tail:
        statements.append(tail)
    return statements


def created_table(statement: str) -> str | None:
    """Get the target table of a CREATE TABLE statement, else None."""
    match = CREATE_TABLE_RE.match(statement)
    if not match:
        return None
    return unquote_identifier(match.group(1))


def find_created_tables(statements: Iterable[str]) -> list[str]:
    """Collect every CREATE TABLE target, in order, without duplicates."""
    tables: list[str] = []
    for statement in statements:
        name = created_table(statement)
        if name and name not in tables:
            tables.append(name)
    return tables


def normalize_drop(statement: str) -> str:
    """Rewrite a bare ``DROP TABLE x`` into ``DROP TABLE IF EXISTS x``."""
    return BARE_DROP_TABLE_RE.sub(r"\1IF EXISTS ", statement, count=1)


def prepare_script(script: str) -> list[str]:
    """
    Turn a dump into a replay plan that is safe to run more than once.

    Every table the script creates is dropped first, bare drops become
    ``IF EXISTS`` drops, and the rest of the script follows in order. Tables
    that exist live but are absent from the script are left untouched.
    """
    statements = [normalize_drop(s) for s in split_statements(script)]
    drops = [f"DROP TABLE IF EXISTS {quote_identifier(t)}" for t in find_created_tables(statements)]
    return drops + statements


@dataclass
class ReplayErrorPolicy:
    """
    Classification of replay errors into ignorable and failed.

    A statement error whose message contains one of ``ignorable_patterns``
    (case-insensitive) is expected when replaying over existing data and is
    skipped quietly. Every other error is a failure that is still skipped
    but counted and reported.
    """

    ignorable_patterns: tuple[str, ...] = field(default=DEFAULT_IGNORABLE_ERRORS)

    def __post_init__(self) -> None:
        self.ignorable_patterns = tuple(p.lower() for p in self.ignorable_patterns if p)

    def is_ignorable(self, error: BaseException | str) -> bool:
        """Check whether an error is in the ignorable class."""
        message = str(error).lower()
        return any(pattern in message for pattern in self.ignorable_patterns)

    def classify(self, error: BaseException | str) -> str:
        """Return ``"ignorable"`` or ``"failed"``."""
        return "ignorable" if self.is_ignorable(error) else "failed"
