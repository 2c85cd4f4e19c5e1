"""
Activity log sink.

Administrative backup actions are appended to the application's activity
log table inside the live database. Recording is best effort: a failure is
logged as a warning and never fails the action being recorded.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sitevault.backup.database import connect, table_exists
from sitevault.backup.models import DISPLAY_FORMAT
from sitevault.backup.sql import quote_identifier
from sitevault.config.settings import AuditConfig

logger = logging.getLogger(__name__)

BACKUP_CREATED = "backup_created"
BACKUP_DELETED = "backup_deleted"
BACKUP_RESTORED = "backup_restored"


class AuditLog:
    """Appends rows to the activity log table."""

    def __init__(
        self,
        db_path: Path,
        config: AuditConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.db_path = Path(db_path)
        self.config = config
        self._clock = clock

    def ensure_table(self, conn: sqlite3.Connection) -> None:
        """Create the activity log table if the application has not."""
        if table_exists(conn, self.config.table):
            return
        conn.execute(
            f"CREATE TABLE {quote_identifier(self.config.table)} ("
            f"{quote_identifier(self.config.key_column)} INTEGER PRIMARY KEY AUTOINCREMENT, "
            '"action" TEXT NOT NULL, '
            '"description" TEXT, '
            f"{quote_identifier(self.config.timestamp_column)} TEXT NOT NULL)"
        )

    def record(self, action: str, description: str) -> bool:
        """
        Append one activity row.

        Returns:
            True if the row was written.
        """
        if not self.config.enabled:
            return False
        if not self.db_path.is_file():
            logger.warning("Activity not recorded, database missing: %s", self.db_path)
            return False

        try:
            conn = connect(self.db_path)
            try:
                self.ensure_table(conn)
                conn.execute(
                    f"INSERT INTO {quote_identifier(self.config.table)} "
                    f'("action", "description", {quote_identifier(self.config.timestamp_column)}) '
                    "VALUES (?, ?, ?)",
                    (action, description, self._clock().strftime(DISPLAY_FORMAT)),
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("Failed to record %s activity: %s", action, e)
            return False

        logger.debug("Recorded activity %s: %s", action, description)
        return True
