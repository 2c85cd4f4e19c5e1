"""
Restore coordination.

Resolves an artifact through the catalog and replays it into the live
deployment. Database restores are destructive for every table named in the
dump, but the activity log rows present at restore time are carried across:
they are captured before the replay and written back afterwards.

Restores are best effort. A failing statement or file copy is recorded in
the transcript and skipped; only failures that stop the restore as a whole
(unreadable artifact, missing target, another restore running) make the
result unsuccessful.

Restores are serialized: threads of one process wait for each other, and a
PID lock file in the backup directory turns away restores from other
processes such as the CLI while the API server is restoring.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sitevault.backup.catalog import BackupCatalog
from sitevault.backup.database import (
    DatabaseRestorer,
    connect,
    table_columns,
    table_exists,
)
from sitevault.backup.filetree import FileTreeExtractor
from sitevault.backup.models import (
    ArtifactNotFoundError,
    ArtifactType,
    BackupArtifact,
    BackupError,
    RestoreError,
    RestoreResult,
    UnsupportedArtifactError,
)
from sitevault.backup.sql import quote_identifier
from sitevault.backup.transcript import Transcript
from sitevault.config.settings import AuditConfig
from sitevault.lockfile import RunLock

logger = logging.getLogger(__name__)

# Threads of one process queue here; other processes are kept out by the lock file
_RESTORE_LOCK = threading.Lock()

RESTORE_LOCK_NAME = ".restore.lock"


class AuditSnapshot:
    """Activity log rows captured before a replay, newest first."""

    def __init__(self, columns: list[str], rows: list[tuple[Any, ...]]) -> None:
        self.columns = columns
        self.rows = rows

    def __len__(self) -> int:
        return len(self.rows)


class RestoreCoordinator:
    """
    Dispatches a restore by artifact type.

    Attributes:
        catalog: Catalog used to resolve artifact ids.
        database_path: Live database file.
        storage_dir: Live storage tree, target of storage restores.
        project_root: Project root, target of config restores.
        lock_path: Lock file shared with other processes restoring into the
            same deployment. None disables it.
    """

    def __init__(
        self,
        catalog: BackupCatalog,
        database_path: Path,
        storage_dir: Path,
        project_root: Path,
        audit: AuditConfig,
        restorer: DatabaseRestorer | None = None,
        extractor: FileTreeExtractor | None = None,
        lock_path: Path | None = None,
    ) -> None:
        self.catalog = catalog
        self.database_path = Path(database_path)
        self.storage_dir = Path(storage_dir)
        self.project_root = Path(project_root)
        self.audit = audit
        self.restorer = restorer or DatabaseRestorer()
        self.extractor = extractor or FileTreeExtractor()
        self.lock_path = Path(lock_path) if lock_path is not None else None

    def restore(self, artifact_id: str) -> RestoreResult:
        """
        Restore one artifact into the live deployment.

        Returns:
            RestoreResult with counts and the full transcript. An unknown id
            yields ``not_found=True``.
        """
        with _RESTORE_LOCK:
            transcript = Transcript("restore", logger, artifact_id=artifact_id)
            result = RestoreResult(success=False, artifact_id=artifact_id)

            try:
                artifact = self.catalog.get(artifact_id)
            except ArtifactNotFoundError:
                logger.info("Restore requested for unknown backup id %s", artifact_id)
                result.message = "Backup file not found"
                result.error = result.message
                result.not_found = True
                return result

            transcript.bind(path=artifact.path)
            result.artifact_type = artifact.type.value
            transcript.info(f"Restoring {artifact.filename} ({artifact.type.value})")

            try:
                with self._exclusive():
                    if artifact.type == ArtifactType.DATABASE:
                        self._restore_database(artifact, transcript, result)
                    elif artifact.type in (ArtifactType.STORAGE, ArtifactType.CONFIG):
                        self._restore_tree(artifact, transcript, result)
                    else:
                        raise UnsupportedArtifactError(
                            f"Unsupported backup type for {artifact.filename}"
                        )
                result.success = True
            except BackupError as e:
                transcript.error(str(e))
                result.error = str(e)
            except (sqlite3.Error, OSError) as e:
                logger.exception("Restore of %s failed", artifact.filename)
                transcript.error(f"{type(e).__name__}: {e}")
                result.error = str(e)

            if result.success:
                result.message = self._success_message(result)
                transcript.info(result.message)
            else:
                result.message = f"Restore failed: {result.error}"

            result.output = transcript.text
            return result

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """
        Hold the cross-process restore lock for the duration of a restore.

        Raises:
            RestoreError: If another live process is restoring.
        """
        if self.lock_path is None:
            yield
            return
        lock = RunLock(self.lock_path)
        if not lock.acquire():
            raise RestoreError(
                f"Another restore is already in progress (pid {lock.holder()})"
            )
        try:
            yield
        finally:
            lock.release()

    def _success_message(self, result: RestoreResult) -> str:
        if result.artifact_type == ArtifactType.DATABASE.value:
            message = (
                f"Database restored ({result.statements_executed} statements executed, "
                f"{result.statements_skipped} skipped, {result.statements_failed} failed)"
            )
        else:
            message = f"Restored {result.files_restored} files"
        return message

    def _restore_database(
        self,
        artifact: BackupArtifact,
        transcript: Transcript,
        result: RestoreResult,
    ) -> None:
        transcript.begin_step("decompress")
        script_path, is_temp = self.restorer.decompress(artifact.path, transcript)
        try:
            script = self.restorer.read_script(script_path)
            self.database_path.parent.mkdir(parents=True, exist_ok=True)

            conn = connect(self.database_path)
            try:
                transcript.begin_step("preserve_audit_log")
                snapshot = self._preserve_audit_log(conn, transcript)
                result.audit_rows_preserved = len(snapshot) if snapshot else 0

                transcript.begin_step("disable_integrity")
                previous = self._disable_integrity(conn, transcript)
                try:
                    transcript.begin_step("replay")
                    report = self.restorer.replay(conn, script, transcript)
                    result.statements_executed = report.executed
                    result.statements_skipped = report.skipped
                    result.statements_failed = report.failed

                    transcript.begin_step("restore_audit_log")
                    result.audit_rows_restored = self._restore_audit_log(conn, snapshot, transcript)
                finally:
                    transcript.begin_step("enable_integrity")
                    self._enable_integrity(conn, previous, transcript)
            finally:
                conn.close()
        finally:
            if is_temp:
                try:
                    script_path.unlink(missing_ok=True)
                except OSError as e:
                    transcript.warning(f"Could not remove temporary file {script_path}: {e}")

    def _preserve_audit_log(
        self, conn: sqlite3.Connection, transcript: Transcript
    ) -> AuditSnapshot | None:
        if not self.audit.enabled:
            return None
        table = self.audit.table
        if not table_exists(conn, table):
            transcript.info(f"No {table} table to preserve")
            return None

        all_columns = table_columns(conn, table)
        columns = [c for c in all_columns if c != self.audit.key_column]
        order = [
            f"{quote_identifier(c)} DESC"
            for c in (self.audit.timestamp_column, self.audit.key_column)
            if c in all_columns
        ]
        query = f"SELECT {', '.join(quote_identifier(c) for c in columns)} FROM {quote_identifier(table)}"
        if order:
            query += f" ORDER BY {', '.join(order)}"

        rows = conn.execute(query).fetchall()
        transcript.info(f"Preserved {len(rows)} rows from {table}")
        return AuditSnapshot(columns, rows)

    def _restore_audit_log(
        self,
        conn: sqlite3.Connection,
        snapshot: AuditSnapshot | None,
        transcript: Transcript,
    ) -> int:
        if snapshot is None:
            return 0
        table = self.audit.table
        if not table_exists(conn, table):
            transcript.warning(f"{table} missing after replay; {len(snapshot)} rows not restored")
            return 0

        live_columns = set(table_columns(conn, table))
        positions = [i for i, c in enumerate(snapshot.columns) if c in live_columns]
        columns = [snapshot.columns[i] for i in positions]
        if not columns:
            transcript.warning(f"No preserved columns exist in {table} after replay")
            return 0

        insert = (
            f"INSERT INTO {quote_identifier(table)} "
            f"({', '.join(quote_identifier(c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

        # Live rows are a superset of the dumped ones; replace them wholesale
        restored = 0
        if conn.in_transaction:
            conn.execute("COMMIT")
        conn.execute("BEGIN")
        try:
            conn.execute(f"DELETE FROM {quote_identifier(table)}")
            for row in reversed(snapshot.rows):
                try:
                    conn.execute(insert, [row[i] for i in positions])
                    restored += 1
                except sqlite3.Error as e:
                    transcript.warning(f"Could not restore {table} row: {e}")
        finally:
            if conn.in_transaction:
                conn.execute("COMMIT")

        transcript.info(f"Restored {restored} of {len(snapshot)} rows into {table}")
        return restored

    def _disable_integrity(
        self, conn: sqlite3.Connection, transcript: Transcript
    ) -> tuple[int, int]:
        foreign_keys = conn.execute("PRAGMA foreign_keys").fetchone()[0]
        ignore_checks = conn.execute("PRAGMA ignore_check_constraints").fetchone()[0]
        conn.execute("PRAGMA foreign_keys = OFF")
        conn.execute("PRAGMA ignore_check_constraints = ON")
        transcript.info("Integrity checks disabled")
        return foreign_keys, ignore_checks

    def _enable_integrity(
        self,
        conn: sqlite3.Connection,
        previous: tuple[int, int],
        transcript: Transcript,
    ) -> None:
        foreign_keys, ignore_checks = previous
        try:
            if conn.in_transaction:
                # A dump that failed mid-block can leave its transaction open
                conn.execute("COMMIT")
            conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
            conn.execute(f"PRAGMA ignore_check_constraints = {'ON' if ignore_checks else 'OFF'}")
            violations = conn.execute("PRAGMA foreign_key_check").fetchall()
        except sqlite3.Error as e:
            transcript.error(f"Could not re-enable integrity checks: {e}")
            return

        transcript.info("Integrity checks restored")
        if violations:
            tables = sorted({row[0] for row in violations})
            transcript.warning(
                f"{len(violations)} foreign key violations in: {', '.join(tables)}"
            )

    def _restore_tree(
        self,
        artifact: BackupArtifact,
        transcript: Transcript,
        result: RestoreResult,
    ) -> None:
        target = self.storage_dir if artifact.type == ArtifactType.STORAGE else self.project_root
        temp_dir = Path(tempfile.mkdtemp(prefix="sitevault-extract-"))
        try:
            transcript.begin_step("extract")
            extracted = self.extractor.extract(artifact.path, temp_dir)
            transcript.info(f"Extracted {extracted} files")
            root = self.extractor.locate_root(temp_dir, target.name)

            transcript.begin_step("merge")
            target.mkdir(parents=True, exist_ok=True)
            copied, errors = self.extractor.merge(root, target, transcript)
            result.files_restored = copied
            transcript.info(f"Copied {copied} files into {target}")
            if errors:
                transcript.warning(f"{len(errors)} files could not be restored")
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)
