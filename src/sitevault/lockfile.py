"""
PID lock files shared by processes working on the same deployment.

The CLI, the API server and scheduled runs each live in their own process,
so exclusive work (a scheduled run, a database restore) is guarded by a file
created with O_EXCL that holds the owner's PID.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """Check whether a process with ``pid`` exists."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Alive, owned by another user
        return True
    except OSError:
        return False
    return True


def read_pid(path: Path) -> int | None:
    try:
        return int(Path(path).read_text().strip())
    except (OSError, ValueError):
        return None


class RunLock:
    """
    Non-blocking lock file.

    A lock left behind by a dead process is removed and taken over.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._held = False

    def holder(self) -> int | None:
        """PID recorded in the lock file, if any."""
        return read_pid(self.path)

    def acquire(self) -> bool:
        """Take the lock without waiting. Returns False if a live process holds it."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        attempts = 2
        while attempts:
            attempts -= 1
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = self.holder()
                if owner is not None and pid_alive(owner):
                    return False
                logger.warning("Taking over stale lock %s (pid %s)", self.path, owner)
                self.path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            self._held = True
            return True
        return False

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove lock %s: %s", self.path, e)
