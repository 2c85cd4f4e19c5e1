"""
Tests for backup orchestration.

Tests cover:
- Backing up each kind and all kinds with one shared timestamp
- Dry runs writing nothing
- Kind isolation when one kind fails
- Unknown kinds
"""

import shutil
import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from sitevault.backup.database import DatabaseArchiver, InProcessDumpStrategy
from sitevault.backup.filetree import FileTreeArchiver
from sitevault.backup.orchestrator import BackupOrchestrator
from sitevault.config.settings import Settings

FIXED_TIME = datetime(2024, 1, 15, 9, 30, 0)


class TestBackupOrchestrator(unittest.TestCase):
    """Tests for BackupOrchestrator."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.db_path = self.temp_dir / "app.db"
        conn = sqlite3.connect(self.db_path)
        conn.execute("CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
        conn.execute("CREATE TABLE posts (id INTEGER PRIMARY KEY, title TEXT)")
        conn.execute("INSERT INTO users (name) VALUES ('Ann')")
        conn.commit()
        conn.close()

        self.storage = self.temp_dir / "storage"
        self.storage.mkdir()
        (self.storage / "a.txt").write_text("a")
        (self.storage / "b.txt").write_text("b")

        self.project = self.temp_dir / "project"
        self.project.mkdir()
        (self.project / ".env").write_text("APP_KEY=1\n")

        self.backup_dir = self.temp_dir / "backups"
        self.settings = Settings()
        self.settings.backup_dir = str(self.backup_dir)
        self.settings.database.path = str(self.db_path)
        self.settings.storage.source_dir = str(self.storage)
        self.settings.config_bundle.project_root = str(self.project)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _orchestrator(self) -> BackupOrchestrator:
        return BackupOrchestrator(
            self.settings,
            DatabaseArchiver(Path(self.settings.database.path), InProcessDumpStrategy()),
            FileTreeArchiver("tar.gz"),
            clock=lambda: FIXED_TIME,
        )

    def test_all_kinds(self):
        """Test all kinds are backed up with one timestamp."""
        summary = self._orchestrator().run("all")

        self.assertTrue(summary.success)
        self.assertEqual(list(summary.results), ["database", "storage", "config"])
        self.assertEqual(
            sorted(p.name for p in self.backup_dir.iterdir()),
            [
                "config_backup_20240115_093000.tar.gz",
                "db_backup_20240115_093000.sql.gz",
                "storage_backup_20240115_093000.tar.gz",
            ],
        )
        self.assertEqual(summary.results["database"].item_count, 2)
        self.assertEqual(summary.results["storage"].item_count, 2)
        self.assertEqual(summary.results["config"].item_count, 1)
        self.assertTrue(summary.results["database"].message.startswith("Backup created ("))

    def test_uncompressed_database(self):
        """Test compress off writes a plain .sql dump."""
        self.settings.database.compress = False

        summary = self._orchestrator().run("database")

        self.assertEqual(summary.results["database"].path.name, "db_backup_20240115_093000.sql")

    def test_dry_run_writes_nothing(self):
        """Test a dry run reports counts without creating files."""
        summary = self._orchestrator().run("all", dry_run=True)

        self.assertTrue(summary.success)
        self.assertTrue(summary.dry_run)
        self.assertEqual(summary.results["database"].message, "Would back up 2 tables")
        self.assertEqual(summary.results["storage"].message, "Would back up 2 files")
        self.assertEqual(summary.results["config"].message, "Would back up 1 files")
        self.assertFalse(self.backup_dir.exists())

    def test_failing_kind_does_not_stop_others(self):
        """Test a missing storage tree fails only the storage kind."""
        shutil.rmtree(self.storage)

        summary = self._orchestrator().run("all")

        self.assertFalse(summary.success)
        self.assertEqual(summary.failed_kinds, ["storage"])
        self.assertTrue(summary.results["database"].success)
        self.assertTrue(summary.results["config"].success)
        self.assertIn("Source directory not found", summary.results["storage"].message)
        self.assertIn("storage", summary.output)

    def test_no_config_files(self):
        """Test config fails when no allow-listed file exists."""
        (self.project / ".env").unlink()

        summary = self._orchestrator().run("config")

        self.assertFalse(summary.success)
        self.assertEqual(summary.results["config"].message, "No configuration files found")
        self.assertEqual(list(self.backup_dir.iterdir()), [])

    def test_missing_database(self):
        """Test a missing database fails the database kind."""
        self.settings.database.path = str(self.temp_dir / "gone.db")

        summary = self._orchestrator().run("database")

        self.assertFalse(summary.success)
        self.assertIn("Database not found", summary.results["database"].message)

    def test_unwritable_backup_dir(self):
        """Test a backup directory that cannot be created fails every kind."""
        blocker = self.temp_dir / "file"
        blocker.write_text("not a directory")
        self.settings.backup_dir = str(blocker / "backups")

        summary = self._orchestrator().run("all")

        self.assertFalse(summary.success)
        self.assertEqual(summary.failed_kinds, ["database", "storage", "config"])
        self.assertIn("Cannot create backup directory", summary.results["database"].message)

    def test_unknown_kind(self):
        """Test unknown kinds are rejected before anything runs."""
        with self.assertRaises(ValueError):
            self._orchestrator().run("everything")
        self.assertFalse(self.backup_dir.exists())

    def test_output_transcript(self):
        """Test the summary carries a readable transcript."""
        summary = self._orchestrator().run("database")
        self.assertIn("Backup started for: database", summary.output)
        self.assertIn("All requested backups completed", summary.output)


if __name__ == "__main__":
    unittest.main()
