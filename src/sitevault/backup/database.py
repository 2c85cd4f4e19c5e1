"""
Database dump and replay.

Dumps are plain SQL scripts (optionally gzip-compressed) that recreate every
table with its rows. Two dump strategies exist behind one interface:

    - InProcessDumpStrategy walks the schema through the sqlite3 driver and
      always works.
    - ExternalDumpStrategy pipes the ``sqlite3`` command-line tool's
      ``.dump`` output through gzip. It is only picked at startup when the
      binary is present.

Replay is best effort: each statement is executed on its own and failures
are recorded and skipped instead of aborting the restore.
"""

from __future__ import annotations

import gzip
import logging
import os
import shutil
import sqlite3
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from sitevault import __version__
from sitevault.backup.models import (
    CorruptArtifactError,
    DumpError,
    PartialReplayError,
    ToolUnavailableError,
)
from sitevault.backup.sql import (
    LOCK_STATEMENT,
    UNLOCK_STATEMENT,
    ReplayErrorPolicy,
    find_created_tables,
    prepare_script,
    quote_identifier,
    render_insert,
)
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import ConfigurationError, DatabaseConfig

logger = logging.getLogger(__name__)

SQLITE_BINARY = "sqlite3"
DEFAULT_CHUNK_SIZE = 1024 * 1024

# Schema objects emitted after all table data, in this order
SECONDARY_OBJECT_TYPES = ("trigger", "view")

# PRAGMA table_xinfo "hidden": 1 virtual-table hidden, 2 generated virtual, 3 generated stored
INSERTABLE_HIDDEN_VALUES = (0,)


def partial_path(path: Path, suffix: str = ".partial") -> Path:
    """Hidden sibling used while a file is being written."""
    return path.with_name(f".{path.name}{suffix}")


def connect(db_path: Path | str, read_only: bool = False) -> sqlite3.Connection:
    """
    Open the live database in autocommit mode.

    Transactions in replayed scripts (``BEGIN``/``COMMIT``) are honored as
    written because the driver does not open implicit ones.
    """
    if read_only:
        uri = Path(db_path).absolute().as_uri() + "?mode=ro"
        return sqlite3.connect(uri, uri=True, isolation_level=None, timeout=30)
    return sqlite3.connect(str(db_path), isolation_level=None, timeout=30)


def list_tables(conn: sqlite3.Connection) -> list[tuple[str, str]]:
    """Get ``(name, create_sql)`` for every user table, sorted by name."""
    cursor = conn.execute(
        "SELECT name, sql FROM sqlite_master "
        "WHERE type = 'table' AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\' "
        "ORDER BY name"
    )
    return [(name, sql) for name, sql in cursor.fetchall() if sql]


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check whether a table exists."""
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def table_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    """Get column names of a table in declaration order."""
    cursor = conn.execute(f"PRAGMA table_info({quote_identifier(table)})")
    return [row[1] for row in cursor.fetchall()]


def insertable_columns(conn: sqlite3.Connection, table: str) -> list[str]:
    """Get the columns an INSERT may name, leaving out generated columns."""
    cursor = conn.execute(f"PRAGMA table_xinfo({quote_identifier(table)})")
    return [row[1] for row in cursor.fetchall() if row[6] in INSERTABLE_HIDDEN_VALUES]


def table_indexes(conn: sqlite3.Connection) -> dict[str, list[str]]:
    """Get explicit ``CREATE INDEX`` statements grouped by table name."""
    cursor = conn.execute(
        "SELECT tbl_name, sql FROM sqlite_master "
        "WHERE type = 'index' AND sql IS NOT NULL "
        "AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\' ORDER BY name"
    )
    indexes: dict[str, list[str]] = {}
    for table, sql in cursor.fetchall():
        indexes.setdefault(table, []).append(sql)
    return indexes


def compress_file(
    source: Path,
    destination: Path,
    level: int = 9,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Stream-compress a file with gzip in fixed-size chunks."""
    with open(source, "rb") as src, gzip.open(destination, "wb", compresslevel=level) as dst:
        while chunk := src.read(chunk_size):
            dst.write(chunk)


def decompress_file(
    source: Path,
    destination: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> None:
    """Stream-decompress a gzip file in fixed-size chunks."""
    with gzip.open(source, "rb") as src, open(destination, "wb") as dst:
        while chunk := src.read(chunk_size):
            dst.write(chunk)


def _remove_quietly(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)


@dataclass
class DumpStats:
    """What a dump wrote."""

    strategy: str
    table_count: int = 0
    row_count: int | None = None


class DumpStrategy(ABC):
    """Produces a SQL dump of a database at an output path."""

    name: str = "base"

    def __init__(self, compression_level: int = 9, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.compression_level = compression_level
        self.chunk_size = chunk_size

    @abstractmethod
    def dump(self, db_path: Path, output_path: Path) -> DumpStats:
        """
        Write a dump of ``db_path`` to ``output_path``.

        Compresses when ``output_path`` ends in ``.gz``.

        Raises:
            DumpError: If the dump cannot be produced. No file is left at
                ``output_path`` in that case.
        """


class InProcessDumpStrategy(DumpStrategy):
    """Dump through the sqlite3 driver; needs nothing but Python."""

    name = "in_process"

    def dump(self, db_path: Path, output_path: Path) -> DumpStats:
        compress = output_path.name.endswith(".gz")
        script_path = output_path.with_name(output_path.name[:-3]) if compress else output_path
        intermediate = partial_path(script_path)
        compressed = partial_path(output_path)

        try:
            stats = self._write_script(db_path, intermediate)

            if compress:
                compress_file(intermediate, compressed, self.compression_level, self.chunk_size)
                if not compressed.exists():
                    raise DumpError(f"Compressed dump was not written: {compressed}")
                os.replace(compressed, output_path)
                if not output_path.exists():
                    raise DumpError(f"Dump missing after rename: {output_path}")
                _remove_quietly(intermediate)
            else:
                os.replace(intermediate, output_path)

            return stats

        except DumpError:
            _remove_quietly(intermediate, compressed, output_path)
            raise
        except (sqlite3.Error, OSError) as e:
            _remove_quietly(intermediate, compressed, output_path)
            raise DumpError(f"Database dump failed: {e}") from e

    def _write_script(self, db_path: Path, script_path: Path) -> DumpStats:
        stats = DumpStats(strategy=self.name, row_count=0)
        conn = connect(db_path, read_only=True)
        try:
            tables = list_tables(conn)
            indexes = table_indexes(conn)
            with open(script_path, "w", encoding="utf-8", newline="\n") as out:
                out.write(f"-- SiteVault {__version__} database dump\n")
                out.write(f"-- SQLite: {sqlite3.sqlite_version}\n")
                out.write(f"-- Source: {db_path}\n")
                out.write(f"-- Created: {datetime.now().isoformat(timespec='seconds')}\n")
                out.write(f"-- Tables: {len(tables)}\n")

                for name, create_sql in tables:
                    out.write(f"\n-- Table: {name}\n")
                    out.write(f"DROP TABLE IF EXISTS {quote_identifier(name)};\n")
                    out.write(f"{create_sql.rstrip().rstrip(';')};\n")
                    stats.row_count += self._write_rows(conn, name, out)
                    for sql in indexes.get(name, []):
                        out.write(f"{sql.rstrip().rstrip(';')};\n")
                    stats.table_count += 1

                secondary = conn.execute(
                    "SELECT type, name, sql FROM sqlite_master "
                    "WHERE type IN ('trigger', 'view') AND sql IS NOT NULL "
                    "AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\'"
                ).fetchall()
                secondary.sort(key=lambda r: (SECONDARY_OBJECT_TYPES.index(r[0]), r[1]))
                if secondary:
                    out.write("\n-- Triggers and views\n")
                for _, _, sql in secondary:
                    out.write(f"{sql.rstrip().rstrip(';')};\n")
        finally:
            conn.close()
        return stats

    def _write_rows(self, conn: sqlite3.Connection, table: str, out) -> int:
        columns = insertable_columns(conn, table)
        if not columns:
            return 0
        column_list = ", ".join(quote_identifier(c) for c in columns)
        cursor = conn.execute(f"SELECT {column_list} FROM {quote_identifier(table)}")
        count = 0
        for row in cursor:
            if count == 0:
                out.write(f"{LOCK_STATEMENT}\n")
            out.write(render_insert(table, columns, row) + "\n")
            count += 1
        if count:
            out.write(f"{UNLOCK_STATEMENT}\n")
        return count


class ExternalDumpStrategy(DumpStrategy):
    """Pipe ``sqlite3 <db> .dump`` through gzip."""

    name = "external"

    def __init__(
        self,
        binary: str,
        compression_level: int = 9,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        super().__init__(compression_level, chunk_size)
        self.binary = binary

    def dump(self, db_path: Path, output_path: Path) -> DumpStats:
        partial = partial_path(output_path)
        args = [self.binary, str(db_path), ".dump"]

        try:
            with subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE) as proc:
                if proc.stdout is None:
                    raise DumpError("sqlite3 produced no stdout stream")
                if output_path.name.endswith(".gz"):
                    with gzip.open(partial, "wb", compresslevel=self.compression_level) as out:
                        shutil.copyfileobj(proc.stdout, out, self.chunk_size)
                else:
                    with open(partial, "wb") as out:
                        shutil.copyfileobj(proc.stdout, out, self.chunk_size)
                stderr = proc.stderr.read() if proc.stderr else b""

            if proc.returncode != 0:
                raise DumpError(
                    f"sqlite3 .dump failed ({proc.returncode}): "
                    f"{stderr.decode('utf-8', errors='ignore').strip()}"
                )
            if not partial.exists():
                raise DumpError(f"Dump was not written: {partial}")

            os.replace(partial, output_path)

        except DumpError:
            _remove_quietly(partial, output_path)
            raise
        except OSError as e:
            _remove_quietly(partial, output_path)
            raise DumpError(f"Database dump failed: {e}") from e

        conn = connect(db_path, read_only=True)
        try:
            table_count = len(list_tables(conn))
        finally:
            conn.close()
        return DumpStats(strategy=self.name, table_count=table_count)


def select_dump_strategy(
    config: DatabaseConfig,
    which: Callable[[str], str | None] = shutil.which,
) -> DumpStrategy:
    """
    Pick the dump strategy once, by probing the host.

    ``auto`` prefers the external tool when it is on PATH. ``external``
    without the tool falls back to the in-process strategy with a warning.
    """
    preference = config.dump_strategy
    if preference == "in_process":
        return InProcessDumpStrategy(config.compression_level, config.chunk_size)

    binary = which(SQLITE_BINARY)
    if binary:
        logger.info("Using external dump tool: %s", binary)
        return ExternalDumpStrategy(binary, config.compression_level, config.chunk_size)

    if preference == "external":
        error = ToolUnavailableError(f"{SQLITE_BINARY} not found on PATH")
        logger.warning("%s; falling back to in-process dump", error)
    return InProcessDumpStrategy(config.compression_level, config.chunk_size)


class DatabaseArchiver:
    """Writes database artifacts with the strategy chosen at startup."""

    def __init__(self, db_path: Path, strategy: DumpStrategy) -> None:
        self.db_path = Path(db_path)
        self.strategy = strategy

    def ensure_database(self) -> None:
        """
        Raises:
            ConfigurationError: If the database file does not exist.
        """
        if not self.db_path.is_file():
            raise ConfigurationError(f"Database not found: {self.db_path}")

    def table_count(self) -> int:
        """Count user tables without dumping anything."""
        self.ensure_database()
        conn = connect(self.db_path, read_only=True)
        try:
            return len(list_tables(conn))
        finally:
            conn.close()

    def backup(self, output_path: Path) -> DumpStats:
        """
        Dump the database to ``output_path``.

        Raises:
            ConfigurationError: If the database file does not exist.
            DumpError: If the dump fails.
        """
        self.ensure_database()
        output_path = Path(output_path)
        stats = self.strategy.dump(self.db_path, output_path)
        if not output_path.exists():
            raise DumpError(f"Dump reported success but {output_path} is missing")
        logger.info(
            "Database dumped with %s strategy: %s (%d tables)",
            stats.strategy,
            output_path,
            stats.table_count,
        )
        return stats


@dataclass
class ReplayReport:
    """Counts and errors from replaying one script."""

    tables: list[str] = field(default_factory=list)
    executed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[PartialReplayError] = field(default_factory=list)


class DatabaseRestorer:
    """Reads dump artifacts and replays them against a live connection."""

    def __init__(
        self,
        policy: ReplayErrorPolicy | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.policy = policy or ReplayErrorPolicy()
        self.chunk_size = chunk_size

    def decompress(self, artifact_path: Path, transcript: Transcript) -> tuple[Path, bool]:
        """
        Get a readable script path for an artifact.

        Returns:
            Tuple of (script path, whether it is a temporary file the caller
            must delete).

        Raises:
            CorruptArtifactError: If the gzip stream cannot be decoded.
        """
        artifact_path = Path(artifact_path)
        if not artifact_path.name.endswith(".gz"):
            transcript.info(f"Reading uncompressed dump {artifact_path.name}")
            return artifact_path, False

        fd, temp_name = tempfile.mkstemp(prefix="sitevault-restore-", suffix=".sql")
        os.close(fd)
        temp_path = Path(temp_name)
        try:
            decompress_file(artifact_path, temp_path, self.chunk_size)
        except (OSError, EOFError, gzip.BadGzipFile) as e:
            _remove_quietly(temp_path)
            raise CorruptArtifactError(f"Cannot decompress {artifact_path.name}: {e}") from e

        transcript.info(
            f"Decompressed {artifact_path.name} ({temp_path.stat().st_size:,} bytes)"
        )
        return temp_path, True

    def read_script(self, script_path: Path) -> str:
        """
        Raises:
            CorruptArtifactError: If the script is not valid UTF-8.
        """
        try:
            return Path(script_path).read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise CorruptArtifactError(f"Dump is not valid UTF-8: {e}") from e

    def replay(
        self,
        conn: sqlite3.Connection,
        script: str,
        transcript: Transcript,
    ) -> ReplayReport:
        """Execute every statement, recording and skipping failures."""
        plan = prepare_script(script)
        report = ReplayReport()
        report.tables = find_created_tables(plan)
        transcript.info(f"Replaying {len(plan)} statements")

        for index, statement in enumerate(plan, start=1):
            try:
                conn.execute(statement)
            except sqlite3.Error as e:
                if self.policy.is_ignorable(e):
                    report.skipped += 1
                    transcript.debug(f"Statement {index} skipped: {e}")
                    continue
                report.failed += 1
                error = PartialReplayError(str(e), step="replay", item=_preview(statement))
                report.errors.append(error)
                transcript.warning(f"Statement {index} failed: {e} [{error.item}]")
            else:
                report.executed += 1

        transcript.info(
            f"Replay finished: {report.executed} executed, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        return report


def _preview(statement: str, limit: int = 80) -> str:
    flat = " ".join(statement.split())
    return flat if len(flat) <= limit else flat[: limit - 3] + "..."
