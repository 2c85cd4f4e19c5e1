"""
Data models and naming conventions for backup artifacts.

Every artifact lives directly in the backup directory and is named
``<prefix><YYYYMMDD_HHMMSS>.<extension>``. The catalog's type detection and
timestamp parsing depend on these names exactly, so the helpers here are the
only place they are built or parsed.
"""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"
TIMESTAMP_PATTERN = re.compile(r"(\d{8}_\d{6})")

# Longest suffix first so the double extensions win over their tails
KNOWN_EXTENSIONS = ("sql.gz", "tar.gz", "sql", "zip")

CONTENT_TYPES = {
    "sql.gz": "application/gzip",
    "tar.gz": "application/gzip",
    "zip": "application/zip",
    "sql": "application/sql",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ArtifactType(Enum):
    """Kinds of backup artifacts, detected from the filename prefix."""

    DATABASE = "database"
    STORAGE = "storage"
    CONFIG = "config"
    UNKNOWN = "unknown"

    @property
    def prefix(self) -> str:
        """Filename prefix for this kind (empty for UNKNOWN)."""
        return ARTIFACT_PREFIXES.get(self, "")

    @classmethod
    def from_filename(cls, filename: str) -> ArtifactType:
        """Classify a filename by its prefix. Never guesses."""
        for artifact_type, prefix in ARTIFACT_PREFIXES.items():
            if filename.startswith(prefix):
                return artifact_type
        return cls.UNKNOWN


ARTIFACT_PREFIXES = {
    ArtifactType.DATABASE: "db_backup_",
    ArtifactType.STORAGE: "storage_backup_",
    ArtifactType.CONFIG: "config_backup_",
}

BACKUP_KINDS = ("database", "storage", "config")


class BackupError(Exception):
    """Base exception for backup and restore errors."""

    pass


class ToolUnavailableError(BackupError):
    """Raised when a required host capability is missing."""

    pass


class DumpError(BackupError):
    """Raised when a database dump cannot be produced."""

    pass


class PartialReplayError(BackupError):
    """One statement or file copy failed; recorded and skipped."""

    def __init__(self, message: str, step: str = "", item: str = "") -> None:
        self.message = message
        self.step = step
        self.item = item
        super().__init__(message)


class ArtifactNotFoundError(BackupError):
    """Raised when an artifact id does not resolve to a file."""

    pass


class UnsupportedArtifactError(BackupError):
    """Raised when an artifact's type cannot be restored."""

    pass


class CorruptArtifactError(BackupError):
    """Raised when an artifact cannot be read or decoded."""

    pass


class RestoreError(BackupError):
    """Raised when a restore cannot start, such as while another one holds the lock."""

    pass


def artifact_filename(
    artifact_type: ArtifactType, timestamp: datetime, extension: str
) -> str:
    """Build the canonical filename for a new artifact."""
    if artifact_type == ArtifactType.UNKNOWN:
        raise ValueError("Cannot name an artifact of unknown type")
    return f"{artifact_type.prefix}{timestamp.strftime(TIMESTAMP_FORMAT)}.{extension}"


def artifact_extension(filename: str) -> str:
    """
    Get the artifact extension, treating ``.sql.gz`` and ``.tar.gz`` as one.

    Returns the lowercase extension without a leading dot, or the last
    suffix for unrecognized names ("" when there is none).
    """
    lowered = filename.lower()
    for extension in KNOWN_EXTENSIONS:
        if lowered.endswith("." + extension):
            return extension
    suffix = Path(lowered).suffix
    return suffix[1:] if suffix else ""


def content_type_for(filename: str) -> str:
    """Get the download content type for an artifact filename."""
    return CONTENT_TYPES.get(artifact_extension(filename), DEFAULT_CONTENT_TYPE)


def parse_filename_timestamp(filename: str) -> datetime | None:
    """Extract the embedded ``YYYYMMDD_HHMMSS`` token, if any and valid."""
    match = TIMESTAMP_PATTERN.search(filename)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def artifact_id(path: Path) -> str:
    """
    Derive the artifact id from its absolute path.

    The id is never stored, so renaming or moving a file changes its id.
    """
    absolute = str(Path(path).absolute())
    return hashlib.md5(absolute.encode("utf-8"), usedforsecurity=False).hexdigest()


def format_bytes(size: int | float, precision: int = 2) -> str:
    """Format a byte count for humans, e.g. ``1536 -> '1.5 KB'``."""
    units = ["B", "KB", "MB", "GB", "TB"]
    value = max(float(size), 0.0)
    power = 0
    while value >= 1024 and power < len(units) - 1:
        value /= 1024
        power += 1
    value = round(value, precision)
    if value == int(value):
        text = str(int(value))
    else:
        text = f"{value:.{precision}f}".rstrip("0").rstrip(".")
    return f"{text} {units[power]}"


@dataclass
class BackupArtifact:
    """One backup file in the backup directory."""

    path: Path
    type: ArtifactType
    size: int
    created_at: datetime
    modified_at: datetime

    @property
    def id(self) -> str:
        """Deterministic id recomputed from the path."""
        return artifact_id(self.path)

    @property
    def filename(self) -> str:
        """Base name of the artifact file."""
        return self.path.name

    @property
    def extension(self) -> str:
        """Artifact extension (double-extension aware)."""
        return artifact_extension(self.path.name)

    @classmethod
    def from_path(cls, path: Path) -> BackupArtifact:
        """
        Build an artifact from a file on disk.

        Raises:
            OSError: If the file cannot be stat'ed (e.g. removed mid-scan).
        """
        path = Path(path)
        stat = path.stat()
        modified_at = datetime.fromtimestamp(stat.st_mtime)
        created_at = parse_filename_timestamp(path.name) or modified_at
        return cls(
            path=path,
            type=ArtifactType.from_filename(path.name),
            size=stat.st_size,
            created_at=created_at,
            modified_at=modified_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert artifact to dictionary."""
        return {
            "id": self.id,
            "filename": self.filename,
            "type": self.type.value,
            "size": self.size,
            "size_formatted": format_bytes(self.size),
            "path": str(self.path),
            "created_at": self.created_at.strftime(DISPLAY_FORMAT),
            "modified_at": self.modified_at.strftime(DISPLAY_FORMAT),
            "timestamp": int(self.modified_at.timestamp()),
        }


@dataclass
class KindResult:
    """Outcome of backing up one kind."""

    kind: str
    success: bool
    message: str
    path: Path | None = None
    size: int = 0
    item_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "kind": self.kind,
            "success": self.success,
            "message": self.message,
            "path": str(self.path) if self.path else None,
            "size": self.size,
            "item_count": self.item_count,
        }


@dataclass
class RunSummary:
    """Aggregated result of one orchestrator run."""

    results: dict[str, KindResult] = field(default_factory=dict)
    dry_run: bool = False
    started_at: datetime = field(default_factory=datetime.now)
    output: str = ""

    @property
    def success(self) -> bool:
        """True when every requested kind succeeded."""
        return all(result.success for result in self.results.values())

    @property
    def failed_kinds(self) -> list[str]:
        """Kinds that failed, in run order."""
        return [kind for kind, result in self.results.items() if not result.success]

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to dictionary."""
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "timestamp": self.started_at.strftime(DISPLAY_FORMAT),
            "results": {kind: result.to_dict() for kind, result in self.results.items()},
            "output": self.output,
        }


@dataclass
class ListPage:
    """One page of catalog results."""

    items: list[BackupArtifact]
    total: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        """Number of pages for the current page size."""
        return math.ceil(self.total / self.per_page) if self.per_page else 0

    def to_dict(self) -> dict[str, Any]:
        """Convert page to dictionary."""
        return {
            "backups": [item.to_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "per_page": self.per_page,
            "total_pages": self.total_pages,
        }


@dataclass
class BackupStatistics:
    """Aggregate statistics over the backup directory."""

    total_backups: int = 0
    total_size: int = 0
    total_size_formatted: str = "0 B"
    database_backups: int = 0
    storage_backups: int = 0
    config_backups: int = 0
    latest_backup: str | None = None
    oldest_backup: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert statistics to dictionary."""
        return asdict(self)


@dataclass
class DownloadPayload:
    """Raw bytes of an artifact with its download metadata."""

    filename: str
    content_type: str
    extension: str
    content: bytes

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.content)


@dataclass
class OperationResult:
    """Result of a simple boundary operation such as delete."""

    success: bool
    message: str
    not_found: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return asdict(self)


@dataclass
class RestoreResult:
    """Result of a restore operation."""

    success: bool
    artifact_id: str = ""
    artifact_type: str = ArtifactType.UNKNOWN.value
    message: str = ""
    error: str | None = None
    output: str = ""
    statements_executed: int = 0
    statements_skipped: int = 0
    statements_failed: int = 0
    audit_rows_preserved: int = 0
    audit_rows_restored: int = 0
    files_restored: int = 0
    not_found: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return asdict(self)
