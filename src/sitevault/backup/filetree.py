"""
File tree archives for storage and configuration backups.

Archives are tar.gz or zip containers whose entry names are POSIX paths
relative to the archived root. The format is picked once at startup; the
extractor reads either format regardless of that choice.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import tarfile
import zipfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from sitevault.backup.database import partial_path
from sitevault.backup.models import (
    CorruptArtifactError,
    PartialReplayError,
    UnsupportedArtifactError,
    artifact_extension,
)
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import ConfigurationError

logger = logging.getLogger(__name__)

ARCHIVE_FORMATS = ("tar.gz", "zip")


def select_archive_format(setting: str, system: str | None = None) -> str:
    """
    Resolve the configured archive format.

    ``auto`` picks zip on Windows, where tar.gz is awkward to open, and
    tar.gz everywhere else.
    """
    if setting in ARCHIVE_FORMATS:
        return setting
    if setting != "auto":
        raise ConfigurationError(f"Unknown archive format: {setting}")
    system = (system or platform.system()).lower()
    return "zip" if system == "windows" else "tar.gz"


def iter_tree_files(source_dir: Path) -> list[Path]:
    """Every regular file below ``source_dir``, sorted. Symlinks are skipped."""
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(source_dir, followlinks=False):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.is_symlink() or not path.is_file():
                continue
            found.append(path)
    return found


class FileTreeArchiver:
    """Packs a directory or an explicit file list into one archive."""

    def __init__(self, archive_format: str = "tar.gz") -> None:
        if archive_format not in ARCHIVE_FORMATS:
            raise ConfigurationError(f"Unknown archive format: {archive_format}")
        self.archive_format = archive_format

    @property
    def extension(self) -> str:
        """Filename extension for archives this archiver writes."""
        return self.archive_format

    def count_directory(self, source_dir: Path) -> int:
        """Number of files ``archive_directory`` would store."""
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ConfigurationError(f"Source directory not found: {source_dir}")
        return len(iter_tree_files(source_dir))

    def existing_files(self, files: Iterable[str | Path], root: Path) -> list[Path]:
        """Allow-listed files that currently exist under ``root``."""
        root = Path(root)
        present: list[Path] = []
        for name in files:
            path = Path(name)
            if not path.is_absolute():
                path = root / path
            if path.is_file() and path not in present:
                present.append(path)
        return present

    def archive_directory(self, source_dir: Path, output_path: Path) -> int:
        """
        Archive every regular file below ``source_dir``.

        Returns:
            Number of files archived.

        Raises:
            ConfigurationError: If the source directory does not exist.
        """
        source_dir = Path(source_dir)
        if not source_dir.is_dir():
            raise ConfigurationError(f"Source directory not found: {source_dir}")
        entries = [(path, path.relative_to(source_dir).as_posix()) for path in iter_tree_files(source_dir)]
        return self._write(entries, Path(output_path))

    def archive_files(self, files: Iterable[str | Path], root: Path, output_path: Path) -> int:
        """
        Archive the allow-listed files that exist, relative to ``root``.

        Returns:
            Number of files archived.
        """
        root = Path(root)
        entries: list[tuple[Path, str]] = []
        for path in self.existing_files(files, root):
            try:
                arcname = path.absolute().relative_to(root.absolute()).as_posix()
            except ValueError:
                logger.warning("Skipping %s: outside project root %s", path, root)
                continue
            entries.append((path, arcname))
        return self._write(entries, Path(output_path))

    def _write(self, entries: list[tuple[Path, str]], output_path: Path) -> int:
        partial = partial_path(output_path)
        try:
            if self.archive_format == "zip":
                with zipfile.ZipFile(partial, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    for source, arcname in entries:
                        zf.write(source, arcname=arcname)
            else:
                with tarfile.open(partial, "w:gz") as tar:
                    for source, arcname in entries:
                        tar.add(source, arcname=arcname, recursive=False)
            os.replace(partial, output_path)
        except Exception:
            partial.unlink(missing_ok=True)
            output_path.unlink(missing_ok=True)
            raise

        logger.info("Archived %d files to %s", len(entries), output_path)
        return len(entries)


class FileTreeExtractor:
    """Unpacks storage/config archives and merges them into a live tree."""

    def extract(self, archive_path: Path, destination: Path) -> int:
        """
        Extract an archive into ``destination``.

        Returns:
            Number of files extracted.

        Raises:
            UnsupportedArtifactError: If the archive format is not known.
            CorruptArtifactError: If the archive is unreadable or has entries
                that would land outside ``destination``.
        """
        archive_path = Path(archive_path)
        destination = Path(destination)
        extension = artifact_extension(archive_path.name)

        try:
            if extension == "tar.gz":
                with tarfile.open(archive_path, "r:gz") as tar:
                    tar.extractall(destination, filter="data")
            elif extension == "zip":
                with zipfile.ZipFile(archive_path) as zf:
                    for name in zf.namelist():
                        _check_member(name)
                    zf.extractall(destination)
            else:
                raise UnsupportedArtifactError(f"Unsupported archive format: {archive_path.name}")
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            raise CorruptArtifactError(f"Cannot extract {archive_path.name}: {e}") from e

        return len(iter_tree_files(destination))

    def locate_root(self, extracted_dir: Path, expected_name: str) -> Path:
        """
        Find the folder that holds the archived tree.

        Archives made by other tools often wrap everything in one folder
        named after the source directory; our own archives do not.
        """
        extracted_dir = Path(extracted_dir)
        entries = list(extracted_dir.iterdir())
        if len(entries) == 1 and entries[0].is_dir() and entries[0].name == expected_name:
            return entries[0]
        return extracted_dir

    def merge(
        self,
        source_dir: Path,
        target_dir: Path,
        transcript: Transcript,
    ) -> tuple[int, list[PartialReplayError]]:
        """
        Copy every file from ``source_dir`` into ``target_dir``.

        Existing files are overwritten and missing directories created. A
        failing copy is recorded and skipped.

        Returns:
            Tuple of (files copied, per-file errors).
        """
        source_dir = Path(source_dir)
        target_dir = Path(target_dir)
        copied = 0
        errors: list[PartialReplayError] = []

        for path in iter_tree_files(source_dir):
            relative = path.relative_to(source_dir)
            destination = target_dir / relative
            try:
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, destination)
                copied += 1
            except OSError as e:
                error = PartialReplayError(str(e), step="merge", item=relative.as_posix())
                errors.append(error)
                transcript.warning(f"Could not restore {relative.as_posix()}: {e}")

        return copied, errors


def _check_member(name: str) -> None:
    member = PurePosixPath(name.replace("\\", "/"))
    if member.is_absolute() or ".." in member.parts or (member.parts and ":" in member.parts[0]):
        raise CorruptArtifactError(f"Unsafe archive entry: {name}")
