"""
Tests for database dumps and replay.

Tests cover:
- In-process dumps (plain and gzip) and their statement counts
- Cleanup of partial files when a dump fails
- External dump tool piping (mocked process)
- Dump strategy selection from host capabilities
- Best-effort replay with skipped and failed statements
"""

import gzip
import io
import shutil
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from sitevault import __version__
from sitevault.backup.database import (
    DatabaseArchiver,
    DatabaseRestorer,
    ExternalDumpStrategy,
    InProcessDumpStrategy,
    connect,
    list_tables,
    select_dump_strategy,
)
from sitevault.backup.models import CorruptArtifactError, DumpError
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import ConfigurationError, DatabaseConfig


def create_sample_database(path: Path) -> None:
    """Create a database with 3 users and 10 log rows."""
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, email TEXT)")
    conn.execute("CREATE TABLE logs (id INTEGER PRIMARY KEY, user_id INTEGER, message TEXT)")
    conn.execute("CREATE INDEX idx_logs_user ON logs (user_id)")
    conn.executemany(
        "INSERT INTO users (name, email) VALUES (?, ?)",
        [("Ann", "ann@example.com"), ("O'Brien", None), ("Zed", "zed@example.com")],
    )
    conn.executemany(
        "INSERT INTO logs (user_id, message) VALUES (?, ?)",
        [(i % 3 + 1, f"event; number {i}") for i in range(10)],
    )
    conn.commit()
    conn.close()


class TestInProcessDump(unittest.TestCase):
    """Tests for InProcessDumpStrategy."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "app.db"
        create_sample_database(self.db_path)
        self.out_dir = self.temp_dir / "backups"
        self.out_dir.mkdir()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_plain_dump_statement_counts(self):
        """Test the dump has one CREATE TABLE per table and one INSERT per row."""
        output = self.out_dir / "db_backup_20240115_093000.sql"

        stats = InProcessDumpStrategy().dump(self.db_path, output)

        text = output.read_text(encoding="utf-8")
        lines = text.splitlines()
        self.assertEqual(sum(1 for l in lines if l.startswith("CREATE TABLE")), 2)
        self.assertEqual(sum(1 for l in lines if l.startswith("INSERT INTO")), 13)
        self.assertEqual(stats.table_count, 2)
        self.assertEqual(stats.row_count, 13)
        self.assertEqual(stats.strategy, "in_process")

    def test_dump_brackets_table_data(self):
        """Test each table's rows are wrapped in a lock block."""
        output = self.out_dir / "db_backup_20240115_093000.sql"
        InProcessDumpStrategy().dump(self.db_path, output)

        text = output.read_text(encoding="utf-8")
        self.assertEqual(text.count("BEGIN IMMEDIATE;"), 2)
        self.assertEqual(text.count("COMMIT;"), 2)

    def test_indexes_follow_their_table_data(self):
        """Test each table's indexes come right after its rows."""
        output = self.out_dir / "db_backup_20240115_093000.sql"
        InProcessDumpStrategy().dump(self.db_path, output)

        text = output.read_text(encoding="utf-8")
        index_at = text.index("CREATE INDEX idx_logs_user")
        self.assertGreater(index_at, text.rindex('INSERT INTO "logs"'))
        self.assertLess(index_at, text.index("-- Table: users"))

    def test_header_records_versions(self):
        """Test the header names the tool and SQLite versions."""
        output = self.out_dir / "db_backup_20240115_093000.sql"
        InProcessDumpStrategy().dump(self.db_path, output)

        header = output.read_text(encoding="utf-8").splitlines()[:2]
        self.assertEqual(header[0], f"-- SiteVault {__version__} database dump")
        self.assertEqual(header[1], f"-- SQLite: {sqlite3.sqlite_version}")

    def test_compressed_dump(self):
        """Test .gz output is gzip and leaves no partial files."""
        output = self.out_dir / "db_backup_20240115_093000.sql.gz"

        InProcessDumpStrategy(compression_level=6).dump(self.db_path, output)

        with gzip.open(output, "rt", encoding="utf-8") as f:
            text = f.read()
        self.assertIn('INSERT INTO "users"', text)
        self.assertEqual(sorted(p.name for p in self.out_dir.iterdir()), [output.name])

    def test_dump_escapes_values(self):
        """Test quotes, semicolons and NULLs survive the dump."""
        output = self.out_dir / "db_backup_20240115_093000.sql"
        InProcessDumpStrategy().dump(self.db_path, output)

        text = output.read_text(encoding="utf-8")
        self.assertIn("'O''Brien', NULL", text)
        self.assertIn("'event; number 0'", text)

    def test_failed_dump_leaves_nothing(self):
        """Test a failing dump removes partial and final files."""
        broken = self.temp_dir / "broken.db"
        broken.write_bytes(b"this is not a database" * 100)
        output = self.out_dir / "db_backup_20240115_093000.sql.gz"

        with self.assertRaises(DumpError):
            InProcessDumpStrategy().dump(broken, output)

        self.assertEqual(list(self.out_dir.iterdir()), [])


class TestExternalDump(unittest.TestCase):
    """Tests for ExternalDumpStrategy with a mocked process."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "app.db"
        create_sample_database(self.db_path)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _mock_popen(self, stdout: bytes, returncode: int = 0, stderr: bytes = b""):
        proc = MagicMock()
        proc.stdout = io.BytesIO(stdout)
        proc.stderr = io.BytesIO(stderr)
        proc.returncode = returncode
        popen = MagicMock()
        popen.return_value.__enter__.return_value = proc
        popen.return_value.__exit__.return_value = False
        return popen

    def test_pipes_through_gzip(self):
        """Test tool output is compressed into the artifact."""
        output = self.temp_dir / "db_backup_20240115_093000.sql.gz"
        popen = self._mock_popen(b"CREATE TABLE users (id);\n")

        with patch("sitevault.backup.database.subprocess.Popen", popen):
            stats = ExternalDumpStrategy("/usr/bin/sqlite3").dump(self.db_path, output)

        args = popen.call_args[0][0]
        self.assertEqual(args, ["/usr/bin/sqlite3", str(self.db_path), ".dump"])
        with gzip.open(output, "rb") as f:
            self.assertEqual(f.read(), b"CREATE TABLE users (id);\n")
        self.assertEqual(stats.strategy, "external")
        self.assertEqual(stats.table_count, 2)

    def test_tool_failure_removes_output(self):
        """Test a non-zero exit raises and leaves no file."""
        output = self.temp_dir / "db_backup_20240115_093000.sql.gz"
        popen = self._mock_popen(b"", returncode=1, stderr=b"Error: unable to open")

        with patch("sitevault.backup.database.subprocess.Popen", popen):
            with self.assertRaises(DumpError) as ctx:
                ExternalDumpStrategy("/usr/bin/sqlite3").dump(self.db_path, output)

        self.assertIn("unable to open", str(ctx.exception))
        self.assertFalse(output.exists())
        self.assertFalse((self.temp_dir / f".{output.name}.partial").exists())


class TestSelectDumpStrategy(unittest.TestCase):
    """Tests for select_dump_strategy."""

    def test_in_process_never_probes(self):
        """Test in_process does not look for the tool."""
        which = MagicMock(return_value="/usr/bin/sqlite3")
        strategy = select_dump_strategy(DatabaseConfig(dump_strategy="in_process"), which=which)
        self.assertIsInstance(strategy, InProcessDumpStrategy)
        which.assert_not_called()

    def test_auto_prefers_external_tool(self):
        """Test auto picks the tool when it is on PATH."""
        strategy = select_dump_strategy(
            DatabaseConfig(dump_strategy="auto"), which=lambda name: "/usr/bin/sqlite3"
        )
        self.assertIsInstance(strategy, ExternalDumpStrategy)
        self.assertEqual(strategy.binary, "/usr/bin/sqlite3")

    def test_auto_without_tool(self):
        """Test auto falls back to in-process."""
        strategy = select_dump_strategy(DatabaseConfig(dump_strategy="auto"), which=lambda name: None)
        self.assertIsInstance(strategy, InProcessDumpStrategy)

    def test_external_without_tool_falls_back(self):
        """Test external without the tool degrades instead of failing."""
        with self.assertLogs("sitevault.backup.database", level="WARNING"):
            strategy = select_dump_strategy(
                DatabaseConfig(dump_strategy="external"), which=lambda name: None
            )
        self.assertIsInstance(strategy, InProcessDumpStrategy)


class TestDatabaseArchiver(unittest.TestCase):
    """Tests for DatabaseArchiver."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_database(self):
        """Test a missing database is a configuration error."""
        archiver = DatabaseArchiver(self.temp_dir / "missing.db", InProcessDumpStrategy())
        with self.assertRaises(ConfigurationError):
            archiver.table_count()
        with self.assertRaises(ConfigurationError):
            archiver.backup(self.temp_dir / "out.sql")

    def test_table_count(self):
        """Test counting tables without dumping."""
        db_path = self.temp_dir / "app.db"
        create_sample_database(db_path)
        archiver = DatabaseArchiver(db_path, InProcessDumpStrategy())
        self.assertEqual(archiver.table_count(), 2)
        self.assertEqual(list(self.temp_dir.iterdir()), [db_path])


class TestDatabaseRestorer(unittest.TestCase):
    """Tests for DatabaseRestorer."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "live.db"
        self.restorer = DatabaseRestorer()
        self.transcript = Transcript("test")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_replay_counts(self):
        """Test executed, skipped and failed statements are counted."""
        script = (
            "CREATE TABLE a (id INTEGER PRIMARY KEY);\n"
            "INSERT INTO a VALUES (1);\n"
            "INSERT INTO a VALUES (1);\n"
            "INSERT INTO missing VALUES (1);\n"
        )
        conn = connect(self.db_path)
        try:
            report = self.restorer.replay(conn, script, self.transcript)
        finally:
            conn.close()

        self.assertEqual(report.tables, ["a"])
        self.assertEqual(report.executed, 3)
        self.assertEqual(report.skipped, 1)
        self.assertEqual(report.failed, 1)
        self.assertEqual(report.errors[0].step, "replay")
        self.assertIn("missing", report.errors[0].item)
        self.assertIn("Statement 5 failed", self.transcript.text)

    def test_replay_round_trip(self):
        """Test replaying a dump reproduces the rows."""
        source = self.temp_dir / "source.db"
        create_sample_database(source)
        dump = self.temp_dir / "dump.sql"
        InProcessDumpStrategy().dump(source, dump)

        conn = connect(self.db_path)
        try:
            report = self.restorer.replay(conn, self.restorer.read_script(dump), self.transcript)
            self.assertEqual(report.failed, 0)
            self.assertEqual([name for name, _ in list_tables(conn)], ["logs", "users"])
            self.assertEqual(conn.execute("SELECT COUNT(*) FROM logs").fetchone()[0], 10)
            self.assertEqual(
                conn.execute("SELECT email FROM users WHERE name = 'O''Brien'").fetchone()[0],
                None,
            )
        finally:
            conn.close()

    def _round_trip(self, *statements: str) -> sqlite3.Connection:
        """Dump a source built from ``statements`` and replay it into the live database."""
        source = self.temp_dir / "source.db"
        conn = sqlite3.connect(source)
        for statement in statements:
            conn.execute(statement)
        conn.commit()
        conn.close()
        dump = self.temp_dir / "dump.sql"
        InProcessDumpStrategy().dump(source, dump)

        live = connect(self.db_path)
        report = self.restorer.replay(live, self.restorer.read_script(dump), self.transcript)
        self.assertEqual(report.failed, 0, self.transcript.text)
        return live

    def test_round_trip_generated_column(self):
        """Test generated columns are left out of INSERTs and recomputed on replay."""
        conn = self._round_trip(
            "CREATE TABLE t (a INTEGER, b INTEGER GENERATED ALWAYS AS (a * 2) STORED, "
            "c INTEGER AS (a + 1) VIRTUAL)",
            "INSERT INTO t (a) VALUES (1), (2), (3)",
        )
        try:
            rows = conn.execute("SELECT a, b, c FROM t ORDER BY a").fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [(1, 2, 2), (2, 4, 3), (3, 6, 4)])

    def test_round_trip_text_with_nul(self):
        """Test text holding NUL characters survives a dump and replay."""
        conn = self._round_trip(
            "CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT)",
            "INSERT INTO notes (body) VALUES (CAST(X'610062' AS TEXT)), ('plain')",
        )
        try:
            rows = conn.execute("SELECT body, typeof(body) FROM notes ORDER BY id").fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [("a\x00b", "text"), ("plain", "text")])

    def test_round_trip_trigger_with_case(self):
        """Test a trigger whose body holds a CASE expression is restored and fires."""
        conn = self._round_trip(
            "CREATE TABLE t (a INTEGER, tag TEXT)",
            "CREATE TRIGGER trg AFTER INSERT ON t BEGIN "
            "UPDATE t SET tag = CASE WHEN NEW.a > 1 THEN 'big' ELSE 'small' END "
            "WHERE rowid = NEW.rowid; END",
            "INSERT INTO t (a) VALUES (1)",
        )
        try:
            self.assertEqual(
                conn.execute("SELECT name FROM sqlite_master WHERE type = 'trigger'").fetchall(),
                [("trg",)],
            )
            conn.execute("INSERT INTO t (a) VALUES (5)")
            rows = conn.execute("SELECT a, tag FROM t ORDER BY a").fetchall()
        finally:
            conn.close()
        self.assertEqual(rows, [(1, "small"), (5, "big")])


    def test_decompress_plain_script(self):
        """Test uncompressed dumps are read in place."""
        dump = self.temp_dir / "db_backup_20240115_093000.sql"
        dump.write_text("SELECT 1;")
        path, is_temp = self.restorer.decompress(dump, self.transcript)
        self.assertEqual(path, dump)
        self.assertFalse(is_temp)

    def test_decompress_gzip(self):
        """Test gzip dumps are expanded to a temporary file."""
        dump = self.temp_dir / "db_backup_20240115_093000.sql.gz"
        with gzip.open(dump, "wb") as f:
            f.write(b"SELECT 1;")

        path, is_temp = self.restorer.decompress(dump, self.transcript)
        try:
            self.assertTrue(is_temp)
            self.assertEqual(path.read_bytes(), b"SELECT 1;")
        finally:
            path.unlink()

    def test_decompress_corrupt(self):
        """Test a broken gzip stream is a corrupt artifact."""
        dump = self.temp_dir / "db_backup_20240115_093000.sql.gz"
        dump.write_bytes(b"not gzip at all")
        with self.assertRaises(CorruptArtifactError):
            self.restorer.decompress(dump, self.transcript)

    def test_read_script_rejects_invalid_utf8(self):
        """Test non UTF-8 scripts are corrupt."""
        dump = self.temp_dir / "dump.sql"
        dump.write_bytes(b"\xff\xfe\x00bad")
        with self.assertRaises(CorruptArtifactError):
            self.restorer.read_script(dump)


if __name__ == "__main__":
    unittest.main()
