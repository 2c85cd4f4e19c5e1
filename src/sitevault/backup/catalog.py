"""
Read-only catalog of the backup directory.

The catalog never writes and never raises for filesystem trouble: files that
disappear or cannot be stat'ed mid-scan are skipped, and a missing directory
is simply an empty catalog.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from sitevault.backup.models import (
    DISPLAY_FORMAT,
    ArtifactNotFoundError,
    ArtifactType,
    BackupArtifact,
    BackupStatistics,
    ListPage,
    format_bytes,
)

logger = logging.getLogger(__name__)

DEFAULT_PER_PAGE = 20


class BackupCatalog:
    """Enumerates backup artifacts directly under one directory."""

    def __init__(self, backup_dir: Path) -> None:
        self.backup_dir = Path(backup_dir)

    def artifacts(self) -> list[BackupArtifact]:
        """
        Scan the directory for artifacts, newest modification first.

        Hidden files (including in-progress ``.partial`` files) and
        subdirectories are ignored.
        """
        try:
            entries = list(os.scandir(self.backup_dir))
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Cannot read backup directory %s: %s", self.backup_dir, e)
            return []

        artifacts: list[BackupArtifact] = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                if not os.access(entry.path, os.R_OK):
                    logger.warning("Skipping unreadable backup file: %s", entry.path)
                    continue
                artifacts.append(BackupArtifact.from_path(Path(entry.path)))
            except OSError as e:
                # Removed or replaced between listing and stat
                logger.warning("Skipping backup file %s: %s", entry.path, e)

        artifacts.sort(key=lambda a: (a.modified_at, a.filename), reverse=True)
        return artifacts

    def list(self, page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> ListPage:
        """
        Get one page of artifacts sorted by modification time, newest first.

        ``page`` and ``per_page`` are clamped to at least 1.
        """
        page = max(int(page), 1)
        per_page = max(int(per_page), 1)

        artifacts = self.artifacts()
        start = (page - 1) * per_page
        return ListPage(
            items=artifacts[start : start + per_page],
            total=len(artifacts),
            page=page,
            per_page=per_page,
        )

    def statistics(self) -> BackupStatistics:
        """Aggregate counts and sizes. Degrades to all zeros on any failure."""
        try:
            artifacts = self.artifacts()
            if not artifacts:
                return BackupStatistics()

            total_size = sum(a.size for a in artifacts)
            by_type = {t: 0 for t in ArtifactType}
            for artifact in artifacts:
                by_type[artifact.type] += 1

            newest = max(artifacts, key=lambda a: a.modified_at)
            oldest = min(artifacts, key=lambda a: a.modified_at)

            return BackupStatistics(
                total_backups=len(artifacts),
                total_size=total_size,
                total_size_formatted=format_bytes(total_size),
                database_backups=by_type[ArtifactType.DATABASE],
                storage_backups=by_type[ArtifactType.STORAGE],
                config_backups=by_type[ArtifactType.CONFIG],
                latest_backup=newest.modified_at.strftime(DISPLAY_FORMAT),
                oldest_backup=oldest.modified_at.strftime(DISPLAY_FORMAT),
            )
        except Exception as e:
            logger.warning("Failed to compute backup statistics: %s", e)
            return BackupStatistics()

    def get(self, artifact_id: str) -> BackupArtifact:
        """
        Resolve an artifact id by re-scanning and re-hashing.

        Raises:
            ArtifactNotFoundError: If no artifact has this id.
        """
        for artifact in self.artifacts():
            if artifact.id == artifact_id:
                return artifact
        raise ArtifactNotFoundError(f"Backup file not found: {artifact_id}")
