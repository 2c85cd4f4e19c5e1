"""
Transport-agnostic backup operations.

BackupService wires the orchestrator, catalog and restore coordinator from
one Settings instance. Host capabilities (dump tool, archive format) are
probed once here, when the service is built, and never again per call.
The CLI and the HTTP server both sit on top of this class.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sitevault.backup.audit import BACKUP_CREATED, BACKUP_DELETED, BACKUP_RESTORED, AuditLog
from sitevault.backup.catalog import DEFAULT_PER_PAGE, BackupCatalog
from sitevault.backup.database import DatabaseArchiver, DatabaseRestorer, select_dump_strategy
from sitevault.backup.filetree import FileTreeArchiver, FileTreeExtractor, select_archive_format
from sitevault.backup.models import (
    ArtifactNotFoundError,
    BackupStatistics,
    DownloadPayload,
    ListPage,
    OperationResult,
    RestoreResult,
    RunSummary,
    content_type_for,
)
from sitevault.backup.orchestrator import BackupOrchestrator
from sitevault.backup.restore import RESTORE_LOCK_NAME, RestoreCoordinator
from sitevault.backup.sql import ReplayErrorPolicy
from sitevault.config.settings import Settings

logger = logging.getLogger(__name__)


class BackupService:
    """
    The six boundary operations: run, list, statistics, download, delete
    and restore.

    Example:
        service = BackupService(load_config())
        summary = service.run("database")
        page = service.list(page=1, per_page=20)
    """

    def __init__(
        self,
        settings: Settings,
        which: Callable[[str], str | None] = shutil.which,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.settings = settings
        self.backup_dir = Path(settings.backup_dir).expanduser()
        db_path = Path(settings.database.path).expanduser()

        self.strategy = select_dump_strategy(settings.database, which=which)
        self.archive_format = select_archive_format(settings.storage.archive_format)
        logger.debug(
            "Backup service ready: dump=%s archive=%s dir=%s",
            self.strategy.name,
            self.archive_format,
            self.backup_dir,
        )

        self.catalog = BackupCatalog(self.backup_dir)
        self.orchestrator = BackupOrchestrator(
            settings,
            DatabaseArchiver(db_path, self.strategy),
            FileTreeArchiver(self.archive_format),
            clock=clock,
        )
        self.coordinator = RestoreCoordinator(
            self.catalog,
            database_path=db_path,
            storage_dir=Path(settings.storage.source_dir).expanduser(),
            project_root=Path(settings.config_bundle.project_root).expanduser(),
            audit=settings.audit,
            restorer=DatabaseRestorer(
                ReplayErrorPolicy(tuple(settings.database.ignorable_errors)),
                chunk_size=settings.database.chunk_size,
            ),
            extractor=FileTreeExtractor(),
            lock_path=self.backup_dir / RESTORE_LOCK_NAME,
        )
        self.audit_log = AuditLog(db_path, settings.audit, clock=clock)

    def run(self, kind: str = "all", dry_run: bool = False) -> RunSummary:
        """
        Run a backup.

        Raises:
            ValueError: If ``kind`` is not recognized.
        """
        summary = self.orchestrator.run(kind, dry_run=dry_run)
        if not dry_run:
            for result in summary.results.values():
                if result.success and result.path is not None:
                    self.audit_log.record(
                        BACKUP_CREATED, f"Created {result.kind} backup {result.path.name}"
                    )
        return summary

    def list(self, page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> ListPage:
        """Get one page of backups, newest first."""
        return self.catalog.list(page, per_page)

    def statistics(self) -> BackupStatistics:
        """Get aggregate backup statistics."""
        return self.catalog.statistics()

    def download(self, artifact_id: str) -> DownloadPayload:
        """
        Read an artifact for download.

        Raises:
            ArtifactNotFoundError: If the id does not resolve or the file
                vanished before it could be read.
        """
        artifact = self.catalog.get(artifact_id)
        try:
            content = artifact.path.read_bytes()
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Backup file not found: {artifact_id}") from e
        return DownloadPayload(
            filename=artifact.filename,
            content_type=content_type_for(artifact.filename),
            extension=artifact.extension,
            content=content,
        )

    def delete(self, artifact_id: str) -> OperationResult:
        """Delete an artifact by id. Unknown ids are reported as not found."""
        try:
            artifact = self.catalog.get(artifact_id)
        except ArtifactNotFoundError:
            return OperationResult(success=False, message="Backup file not found", not_found=True)

        try:
            artifact.path.unlink()
        except FileNotFoundError:
            return OperationResult(success=False, message="Backup file not found", not_found=True)
        except OSError as e:
            logger.error("Failed to delete backup %s: %s", artifact.path, e)
            return OperationResult(success=False, message=f"Failed to delete backup: {e}")

        logger.info("Deleted backup %s", artifact.path)
        self.audit_log.record(BACKUP_DELETED, f"Deleted backup {artifact.filename}")
        return OperationResult(success=True, message="Backup deleted successfully")

    def restore(self, artifact_id: str) -> RestoreResult:
        """Restore an artifact into the live deployment."""
        result = self.coordinator.restore(artifact_id)
        if result.success:
            # Written after the audit rows were carried across the replay
            self.audit_log.record(
                BACKUP_RESTORED, f"Restored {result.artifact_type} backup {artifact_id}"
            )
        return result
