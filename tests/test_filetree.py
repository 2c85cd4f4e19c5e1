"""
Tests for storage and configuration archives.

Tests cover:
- Archive format selection
- Directory and allow-list archiving in both formats
- Safe extraction (entries outside the destination are rejected)
- Wrapper folder detection and merging into a live tree
"""

import shutil
import tarfile
import tempfile
import unittest
import zipfile
from pathlib import Path

from sitevault.backup.filetree import (
    FileTreeArchiver,
    FileTreeExtractor,
    iter_tree_files,
    select_archive_format,
)
from sitevault.backup.models import CorruptArtifactError, UnsupportedArtifactError
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import ConfigurationError


class TestSelectArchiveFormat(unittest.TestCase):
    """Tests for select_archive_format."""

    def test_explicit_formats(self):
        """Test explicit formats pass through."""
        self.assertEqual(select_archive_format("zip", system="Linux"), "zip")
        self.assertEqual(select_archive_format("tar.gz", system="Windows"), "tar.gz")

    def test_auto_by_platform(self):
        """Test auto picks zip on Windows only."""
        self.assertEqual(select_archive_format("auto", system="Windows"), "zip")
        self.assertEqual(select_archive_format("auto", system="Linux"), "tar.gz")
        self.assertEqual(select_archive_format("auto", system="Darwin"), "tar.gz")

    def test_unknown_format(self):
        """Test unknown formats are configuration errors."""
        with self.assertRaises(ConfigurationError):
            select_archive_format("rar")
        with self.assertRaises(ConfigurationError):
            FileTreeArchiver("7z")


class FileTreeTestCase(unittest.TestCase):
    """Shared temporary layout."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())
        self.source = self.temp_dir / "storage"
        (self.source / "uploads" / "2024").mkdir(parents=True)
        (self.source / "uploads" / "2024" / "photo.jpg").write_bytes(b"\xff\xd8jpeg")
        (self.source / "readme.txt").write_text("hello")
        self.out_dir = self.temp_dir / "backups"
        self.out_dir.mkdir()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestFileTreeArchiver(FileTreeTestCase):
    """Tests for FileTreeArchiver."""

    def test_iter_tree_files_sorted(self):
        """Test files are listed recursively in order."""
        names = [p.relative_to(self.source).as_posix() for p in iter_tree_files(self.source)]
        self.assertEqual(names, ["readme.txt", "uploads/2024/photo.jpg"])

    def test_archive_directory_tar(self):
        """Test tar.gz entries are relative POSIX paths."""
        output = self.out_dir / "storage_backup_20240115_093000.tar.gz"

        count = FileTreeArchiver("tar.gz").archive_directory(self.source, output)

        self.assertEqual(count, 2)
        with tarfile.open(output, "r:gz") as tar:
            self.assertEqual(sorted(tar.getnames()), ["readme.txt", "uploads/2024/photo.jpg"])
        self.assertEqual([p.name for p in self.out_dir.iterdir()], [output.name])

    def test_archive_directory_zip(self):
        """Test zip entries are relative POSIX paths."""
        output = self.out_dir / "storage_backup_20240115_093000.zip"

        count = FileTreeArchiver("zip").archive_directory(self.source, output)

        self.assertEqual(count, 2)
        with zipfile.ZipFile(output) as zf:
            self.assertEqual(sorted(zf.namelist()), ["readme.txt", "uploads/2024/photo.jpg"])

    def test_archive_missing_directory(self):
        """Test a missing source directory is a configuration error."""
        archiver = FileTreeArchiver("tar.gz")
        with self.assertRaises(ConfigurationError):
            archiver.archive_directory(self.temp_dir / "nope", self.out_dir / "x.tar.gz")
        with self.assertRaises(ConfigurationError):
            archiver.count_directory(self.temp_dir / "nope")
        self.assertEqual(list(self.out_dir.iterdir()), [])

    def test_archive_files_only_existing(self):
        """Test only allow-listed files that exist are archived."""
        root = self.temp_dir / "project"
        root.mkdir()
        (root / ".env").write_text("APP_KEY=secret\n")
        output = self.out_dir / "config_backup_20240115_093000.tar.gz"

        archiver = FileTreeArchiver("tar.gz")
        files = [".env", "pyproject.toml", "poetry.lock"]
        self.assertEqual(len(archiver.existing_files(files, root)), 1)

        count = archiver.archive_files(files, root, output)

        self.assertEqual(count, 1)
        with tarfile.open(output, "r:gz") as tar:
            self.assertEqual(tar.getnames(), [".env"])

    def test_count_directory(self):
        """Test counting without writing."""
        self.assertEqual(FileTreeArchiver().count_directory(self.source), 2)
        self.assertEqual(list(self.out_dir.iterdir()), [])


class TestFileTreeExtractor(FileTreeTestCase):
    """Tests for FileTreeExtractor."""

    def setUp(self):
        super().setUp()
        self.extractor = FileTreeExtractor()
        self.dest = self.temp_dir / "extract"
        self.dest.mkdir()

    def test_extract_both_formats(self):
        """Test archives of either format extract."""
        for fmt in ("tar.gz", "zip"):
            output = self.out_dir / f"storage_backup_20240115_093000.{fmt}"
            FileTreeArchiver(fmt).archive_directory(self.source, output)
            dest = self.temp_dir / f"extract-{fmt}"
            dest.mkdir()

            self.assertEqual(self.extractor.extract(output, dest), 2)
            self.assertEqual((dest / "readme.txt").read_text(), "hello")

    def test_zip_slip_rejected(self):
        """Test zip entries escaping the destination are refused."""
        archive = self.out_dir / "storage_backup_20240115_093000.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../evil.txt", "pwned")

        with self.assertRaises(CorruptArtifactError):
            self.extractor.extract(archive, self.dest)
        self.assertFalse((self.temp_dir / "evil.txt").exists())

    def test_tar_traversal_rejected(self):
        """Test tar entries escaping the destination are refused."""
        evil = self.temp_dir / "evil.txt"
        evil.write_text("pwned")
        archive = self.out_dir / "storage_backup_20240115_093000.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(evil, arcname="../escaped.txt")

        with self.assertRaises(CorruptArtifactError):
            self.extractor.extract(archive, self.dest)
        self.assertFalse((self.temp_dir / "escaped.txt").exists())

    def test_corrupt_archive(self):
        """Test garbage archives are corrupt artifacts."""
        archive = self.out_dir / "storage_backup_20240115_093000.tar.gz"
        archive.write_bytes(b"garbage")
        with self.assertRaises(CorruptArtifactError):
            self.extractor.extract(archive, self.dest)

    def test_unsupported_format(self):
        """Test unknown extensions are unsupported."""
        archive = self.out_dir / "storage_backup_20240115_093000.rar"
        archive.write_bytes(b"Rar!")
        with self.assertRaises(UnsupportedArtifactError):
            self.extractor.extract(archive, self.dest)

    def test_locate_root_wrapped(self):
        """Test a single folder named after the target is unwrapped."""
        (self.dest / "storage" / "uploads").mkdir(parents=True)
        self.assertEqual(self.extractor.locate_root(self.dest, "storage"), self.dest / "storage")

    def test_locate_root_unwrapped(self):
        """Test archives without a wrapper use the extraction root."""
        (self.dest / "uploads").mkdir()
        self.assertEqual(self.extractor.locate_root(self.dest, "storage"), self.dest)

        (self.dest / "storage").mkdir()
        self.assertEqual(self.extractor.locate_root(self.dest, "storage"), self.dest)

    def test_merge_overwrites_and_keeps(self):
        """Test merge overwrites matching files and keeps the rest."""
        target = self.temp_dir / "live"
        (target / "uploads").mkdir(parents=True)
        (target / "readme.txt").write_text("changed")
        (target / "uploads" / "new.txt").write_text("kept")

        copied, errors = self.extractor.merge(self.source, target, Transcript("test"))

        self.assertEqual(copied, 2)
        self.assertEqual(errors, [])
        self.assertEqual((target / "readme.txt").read_text(), "hello")
        self.assertEqual((target / "uploads" / "new.txt").read_text(), "kept")
        self.assertTrue((target / "uploads" / "2024" / "photo.jpg").exists())


if __name__ == "__main__":
    unittest.main()
