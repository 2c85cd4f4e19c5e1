"""
Backup orchestration across artifact kinds.

One run backs up any of database, storage and config. Each kind is
independent: a failing kind is reported in the summary and never stops the
others.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sitevault.backup.database import DatabaseArchiver
from sitevault.backup.filetree import FileTreeArchiver
from sitevault.backup.models import (
    BACKUP_KINDS,
    ArtifactType,
    KindResult,
    RunSummary,
    artifact_filename,
    format_bytes,
)
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import ConfigurationError, Settings

logger = logging.getLogger(__name__)

RUN_KINDS = ("all",) + BACKUP_KINDS


class BackupOrchestrator:
    """
    Runs the archivers for the requested kinds and aggregates the outcome.

    The archivers are built once by the caller (see BackupService) so the
    dump strategy and archive format are fixed for the process lifetime.
    """

    def __init__(
        self,
        settings: Settings,
        database_archiver: DatabaseArchiver,
        file_archiver: FileTreeArchiver,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.backup_dir = Path(settings.backup_dir).expanduser()
        self.database_archiver = database_archiver
        self.file_archiver = file_archiver
        self._clock = clock

    def run(self, kind: str = "all", dry_run: bool = False) -> RunSummary:
        """
        Back up the requested kinds.

        Args:
            kind: One of all, database, storage or config.
            dry_run: Count what would be archived without writing anything.

        Returns:
            RunSummary with one KindResult per requested kind.

        Raises:
            ValueError: If ``kind`` is not recognized.
        """
        if kind not in RUN_KINDS:
            raise ValueError(f"Unknown backup type: {kind}. Must be one of: {', '.join(RUN_KINDS)}")

        kinds = list(BACKUP_KINDS) if kind == "all" else [kind]
        started_at = self._clock()
        transcript = Transcript("run", logger)
        summary = RunSummary(dry_run=dry_run, started_at=started_at)

        transcript.info(
            f"{'Dry run' if dry_run else 'Backup'} started for: {', '.join(kinds)}"
        )

        directory_error: str | None = None
        if not dry_run:
            directory_error = self._prepare_directory()
            if directory_error:
                transcript.error(directory_error)

        for name in kinds:
            transcript.begin_step(name)
            if directory_error:
                summary.results[name] = KindResult(kind=name, success=False, message=directory_error)
                continue
            try:
                if dry_run:
                    result = self._preview(name)
                else:
                    result = self._backup(name, started_at, transcript)
            except Exception as e:
                logger.exception("Backup of %s failed", name)
                result = KindResult(kind=name, success=False, message=str(e))

            if result.success:
                transcript.info(f"{name}: {result.message}")
            else:
                transcript.error(f"{name}: {result.message}")
            summary.results[name] = result

        transcript.begin_step("summary")
        if summary.success:
            transcript.info("All requested backups completed")
        else:
            transcript.warning(f"Failed: {', '.join(summary.failed_kinds)}")
        summary.output = transcript.text
        return summary

    def _prepare_directory(self) -> str | None:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return str(ConfigurationError(f"Cannot create backup directory {self.backup_dir}: {e}"))
        if not os.access(self.backup_dir, os.W_OK):
            return str(ConfigurationError(f"Backup directory is not writable: {self.backup_dir}"))
        return None

    def _preview(self, kind: str) -> KindResult:
        if kind == "database":
            count = self.database_archiver.table_count()
            return KindResult(kind, True, f"Would back up {count} tables", item_count=count)

        if kind == "storage":
            count = self.file_archiver.count_directory(self._storage_dir())
        else:
            count = len(self._config_files())
            if count == 0:
                raise ConfigurationError("No configuration files found")
        return KindResult(kind, True, f"Would back up {count} files", item_count=count)

    def _backup(self, kind: str, timestamp: datetime, transcript: Transcript) -> KindResult:
        if kind == "database":
            extension = "sql.gz" if self.settings.database.compress else "sql"
            path = self.backup_dir / artifact_filename(ArtifactType.DATABASE, timestamp, extension)
            transcript.bind(path=path)
            stats = self.database_archiver.backup(path)
            count = stats.table_count
        elif kind == "storage":
            path = self.backup_dir / artifact_filename(
                ArtifactType.STORAGE, timestamp, self.file_archiver.extension
            )
            transcript.bind(path=path)
            count = self.file_archiver.archive_directory(self._storage_dir(), path)
        else:
            files = self._config_files()
            if not files:
                raise ConfigurationError("No configuration files found")
            path = self.backup_dir / artifact_filename(
                ArtifactType.CONFIG, timestamp, self.file_archiver.extension
            )
            transcript.bind(path=path)
            count = self.file_archiver.archive_files(files, self._project_root(), path)

        size = path.stat().st_size
        return KindResult(
            kind=kind,
            success=True,
            message=f"Backup created ({format_bytes(size)})",
            path=path,
            size=size,
            item_count=count,
        )

    def _storage_dir(self) -> Path:
        return Path(self.settings.storage.source_dir).expanduser()

    def _project_root(self) -> Path:
        return Path(self.settings.config_bundle.project_root).expanduser()

    def _config_files(self) -> list[Path]:
        return self.file_archiver.existing_files(
            self.settings.config_bundle.files, self._project_root()
        )
