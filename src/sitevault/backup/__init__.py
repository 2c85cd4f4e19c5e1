"""
Backup and restore engine for SiteVault.

Produces database dumps and file tree archives in one flat directory,
catalogs them, and restores them into the live deployment.

Usage:
    from sitevault.backup import BackupService

    service = BackupService(settings)

    # Back up everything
    summary = service.run("all")

    # Browse and restore
    page = service.list(page=1, per_page=20)
    result = service.restore(page.items[0].id)
    print(result.output)
"""

from sitevault.backup.catalog import BackupCatalog
from sitevault.backup.models import (
    ArtifactNotFoundError,
    ArtifactType,
    BackupArtifact,
    BackupError,
    BackupStatistics,
    CorruptArtifactError,
    DownloadPayload,
    DumpError,
    KindResult,
    ListPage,
    OperationResult,
    PartialReplayError,
    RestoreError,
    RestoreResult,
    RunSummary,
    ToolUnavailableError,
    UnsupportedArtifactError,
    format_bytes,
)
from sitevault.backup.orchestrator import BackupOrchestrator
from sitevault.backup.restore import RestoreCoordinator
from sitevault.backup.service import BackupService

__all__ = [
    # Main classes
    "BackupService",
    "BackupOrchestrator",
    "BackupCatalog",
    "RestoreCoordinator",
    # Models
    "ArtifactType",
    "BackupArtifact",
    "BackupStatistics",
    "DownloadPayload",
    "KindResult",
    "ListPage",
    "OperationResult",
    "RestoreResult",
    "RunSummary",
    # Errors
    "BackupError",
    "ToolUnavailableError",
    "DumpError",
    "PartialReplayError",
    "ArtifactNotFoundError",
    "UnsupportedArtifactError",
    "CorruptArtifactError",
    "RestoreError",
    # Utilities
    "format_bytes",
]
