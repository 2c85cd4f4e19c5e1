"""
Operation transcripts.

A Transcript is handed explicitly through every step of a run or restore.
It records human-readable lines for the caller and forwards each line to a
logger with the artifact id, path and current step attached, so a failure
can be diagnosed from the log alone.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any


class Transcript:
    """
    Line-oriented record of one operation plus its logging context.

    Attributes:
        operation: Name of the operation (``run``, ``restore``...).
        artifact_id: Id of the artifact being handled, if any.
        path: Path of the artifact being handled, if any.
        step: Name of the step currently executing.
    """

    def __init__(
        self,
        operation: str,
        logger: logging.Logger | None = None,
        artifact_id: str = "",
        path: Path | str | None = None,
    ) -> None:
        self.operation = operation
        self.artifact_id = artifact_id
        self.path = str(path) if path else ""
        self.step = ""
        self.lines: list[str] = []
        self._logger = logger or logging.getLogger(__name__)

    def bind(self, artifact_id: str = "", path: Path | str | None = None) -> None:
        """Attach artifact identity once it is known."""
        if artifact_id:
            self.artifact_id = artifact_id
        if path:
            self.path = str(path)

    def begin_step(self, step: str) -> None:
        """Mark the start of a named step."""
        self.step = step
        self._emit(logging.DEBUG, f"[{step}]")

    def info(self, message: str) -> None:
        self._emit(logging.INFO, message)

    def debug(self, message: str) -> None:
        # Debug lines go to the log only
        self._logger.debug(self._format(message), extra=self._extra())

    def warning(self, message: str) -> None:
        self._emit(logging.WARNING, f"WARNING: {message}")

    def error(self, message: str) -> None:
        self._emit(logging.ERROR, f"ERROR: {message}")

    @property
    def text(self) -> str:
        """Full transcript as text."""
        return "\n".join(self.lines)

    def _emit(self, level: int, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self.lines.append(f"[{stamp}] {message}")
        self._logger.log(level, self._format(message), extra=self._extra())

    def _format(self, message: str) -> str:
        context = [self.operation]
        if self.artifact_id:
            context.append(f"id={self.artifact_id}")
        if self.path:
            context.append(f"path={self.path}")
        if self.step:
            context.append(f"step={self.step}")
        return f"{' '.join(context)}: {message}"

    def _extra(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "artifact_id": self.artifact_id,
            "artifact_path": self.path,
            "step": self.step,
        }
