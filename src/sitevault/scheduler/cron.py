"""
Scheduled backup runs.

A schedule is either a line in the user's crontab that invokes
``sitevault run --scheduled`` or a built-in daemon thread that wakes up when
the next run is due. Both paths end in Scheduler.run_scheduled_backup, which
takes the run lock first so two runs never overlap.

State (enabled, interval, last result, next run) lives in
``<config_dir>/scheduler/state.json``; run history goes to a size-rotated
``<config_dir>/logs/scheduler.log``.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import platform
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from sitevault.backup.models import RunSummary
from sitevault.config.settings import DEFAULT_CONFIG_DIR, Settings
from sitevault.lockfile import RunLock, pid_alive, read_pid

logger = logging.getLogger(__name__)

# Lines containing this (case-insensitive) belong to us
CRON_MARKER = "sitevault"
CRON_COMMENT = "# sitevault scheduled backup"

# Scheduled runs start at 02:00 UTC
RUN_HOUR = 2

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# How often the built-in loop re-reads its state
POLL_SECONDS = 60


class ScheduleInterval(Enum):
    """How often scheduled backups run."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    @property
    def seconds(self) -> int:
        return _INTERVALS[self][0]

    @property
    def cron_schedule(self) -> str:
        """Crontab time fields (minute hour day month weekday)."""
        return _INTERVALS[self][1]

    @classmethod
    def from_string(cls, value: str) -> ScheduleInterval:
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(i.value for i in cls)
            raise ValueError(f"Invalid interval: {value!r}. Choose one of: {choices}") from None


_INTERVALS: dict[ScheduleInterval, tuple[int, str]] = {
    ScheduleInterval.HOURLY: (3600, "0 * * * *"),
    ScheduleInterval.DAILY: (86400, f"0 {RUN_HOUR} * * *"),
    ScheduleInterval.WEEKLY: (604800, f"0 {RUN_HOUR} * * 0"),
}


class SchedulerMode(Enum):
    """Where the schedule lives."""

    SYSTEM_CRON = "system_cron"
    BUILT_IN = "built_in"


def next_run_after(interval: ScheduleInterval, now: datetime) -> datetime:
    """
    First run time strictly after ``now`` for ``interval``.

    Hourly runs fall on the hour; daily runs at RUN_HOUR; weekly runs on
    Sunday at RUN_HOUR, matching the crontab expressions above.
    """
    if interval is ScheduleInterval.HOURLY:
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

    candidate = now.replace(hour=RUN_HOUR, minute=0, second=0, microsecond=0)
    if interval is ScheduleInterval.WEEKLY:
        # weekday(): Monday is 0, Sunday is 6
        candidate += timedelta(days=(6 - now.weekday()) % 7)
        if candidate <= now:
            candidate += timedelta(weeks=1)
    elif candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def _timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class ScheduleStatus:
    """
    Persisted scheduler state.

    Attributes:
        enabled: Whether a schedule is installed.
        interval: Interval name.
        mode: SchedulerMode value.
        next_run: When the next run is due.
        last_run: When the last run finished.
        last_run_success: Outcome of the last run.
        last_run_error: Error of the last run, if it failed or was skipped.
        pid: PID of the built-in daemon while it runs.
    """

    enabled: bool = False
    interval: str = ScheduleInterval.DAILY.value
    mode: str = SchedulerMode.BUILT_IN.value
    next_run: datetime | None = None
    last_run: datetime | None = None
    last_run_success: bool | None = None
    last_run_error: str | None = None
    pid: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        data["next_run"] = _isoformat(self.next_run)
        data["last_run"] = _isoformat(self.last_run)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduleStatus:
        status = cls()
        for name in ("enabled", "interval", "mode", "last_run_success", "last_run_error", "pid"):
            if name in data:
                setattr(status, name, data[name])
        status.next_run = _timestamp(data.get("next_run"))
        status.last_run = _timestamp(data.get("last_run"))
        return status


@dataclass
class ScheduledRun:
    """Outcome of one scheduled run."""

    started_at: datetime
    completed_at: datetime | None = None
    success: bool = False
    skipped: bool = False
    error: str | None = None
    kinds_succeeded: list[str] = field(default_factory=list)
    kinds_failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert run to dictionary."""
        return {
            "started_at": _isoformat(self.started_at),
            "completed_at": _isoformat(self.completed_at),
            "success": self.success,
            "skipped": self.skipped,
            "error": self.error,
            "kinds_succeeded": list(self.kinds_succeeded),
            "kinds_failed": list(self.kinds_failed),
        }


class SchedulerError(Exception):
    """Base exception for scheduler errors."""

    pass


class CronNotAvailableError(SchedulerError):
    """Raised when the crontab command cannot be used."""

    pass


class SchedulerAlreadyRunningError(SchedulerError):
    """Raised when a daemon is already running."""

    pass


class SchedulerNotRunningError(SchedulerError):
    """Raised when no daemon is running."""

    pass


def _run_log(path: Path) -> logging.Logger:
    """Dedicated logger writing to the rotating scheduler log at ``path``."""
    run_logger = logging.getLogger(f"{__name__}.runs.{path}")
    if not run_logger.handlers:
        handler = logging.handlers.RotatingFileHandler(
            path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, delay=True
        )
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(message)s"))
        run_logger.addHandler(handler)
        run_logger.setLevel(logging.INFO)
        run_logger.propagate = False
    return run_logger


def _read_crontab() -> str:
    """Current crontab, empty when the user has none."""
    try:
        result = subprocess.run(["crontab", "-l"], capture_output=True, text=True, timeout=10)
    except (subprocess.SubprocessError, OSError) as e:
        raise CronNotAvailableError(f"Cannot read crontab: {e}") from e
    return result.stdout if result.returncode == 0 else ""


def _write_crontab(lines: list[str]) -> None:
    content = "\n".join(lines) + "\n"
    try:
        process = subprocess.Popen(["crontab", "-"], stdin=subprocess.PIPE, text=True)
        process.communicate(input=content, timeout=10)
    except (subprocess.SubprocessError, OSError) as e:
        raise CronNotAvailableError(f"Cannot write crontab: {e}") from e
    if process.returncode != 0:
        raise CronNotAvailableError(f"crontab exited with status {process.returncode}")


def _foreign_lines(crontab: str) -> list[str]:
    """Crontab lines that are not ours."""
    return [
        line for line in crontab.splitlines()
        if line.strip() and CRON_MARKER not in line.lower()
    ]


class Scheduler:
    """
    Installs, reports on and executes scheduled backups.

    Example:
        scheduler = Scheduler(settings=settings)
        scheduler.install_schedule("daily", mode="system_cron")
        print(scheduler.get_schedule_status().next_run)
    """

    def __init__(
        self,
        config_dir: Path | None = None,
        settings: Settings | None = None,
        runner: Callable[[str], RunSummary] | None = None,
        config_path: Path | None = None,
    ) -> None:
        """
        Args:
            config_dir: Holds scheduler state and logs. Defaults to ~/.sitevault.
            settings: Settings for scheduled runs; loaded from the default
                config file when omitted.
            runner: Callable taking a backup type and returning a RunSummary.
                Defaults to BackupService.run.
            config_path: Config file the crontab command passes with --config.
        """
        base = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self._scheduler_dir = base / "scheduler"
        self._state_file = self._scheduler_dir / "state.json"
        self._pid_file = self._scheduler_dir / "scheduler.pid"
        self._log_file = base / "logs" / "scheduler.log"
        self._settings = settings
        self._runner = runner
        self._config_path = config_path
        self.run_lock = RunLock(self._scheduler_dir / "run.lock")

        self._scheduler_dir.mkdir(parents=True, exist_ok=True)
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        self._run_log = _run_log(self._log_file)

        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    # Installation

    def install_schedule(
        self,
        interval: ScheduleInterval | str,
        mode: SchedulerMode | str | None = None,
    ) -> ScheduleStatus:
        """
        Install a schedule and persist it.

        Raises:
            CronNotAvailableError: If cron mode was chosen and crontab fails.
            ValueError: For an unknown interval or mode.
        """
        if not isinstance(interval, ScheduleInterval):
            interval = ScheduleInterval.from_string(interval)
        if mode is None:
            mode = self._detect_best_mode()
        elif not isinstance(mode, SchedulerMode):
            mode = SchedulerMode(mode)

        if mode is SchedulerMode.SYSTEM_CRON:
            line = self.build_cron_line(interval)
            _write_crontab([*_foreign_lines(_read_crontab()), CRON_COMMENT, line])
            self._log(f"Installed cron entry: {line}")

        status = self._load_state()
        status.enabled = True
        status.interval = interval.value
        status.mode = mode.value
        status.next_run = next_run_after(interval, datetime.now(UTC))
        self._save_state(status)

        self._log(f"Schedule installed ({interval.value}, {mode.value}); next run {status.next_run}")
        return status

    def uninstall_schedule(self) -> ScheduleStatus:
        """Remove our crontab entries, stop the daemon and disable the schedule."""
        if self._is_daemon_running():
            self._stop_daemon()

        try:
            self._remove_cron_entries()
        except CronNotAvailableError as e:
            self._log(f"Warning: could not remove cron entry: {e}")

        status = self._load_state()
        status.enabled = False
        status.pid = None
        self._save_state(status)
        self._log("Schedule uninstalled")
        return status

    def _remove_cron_entries(self) -> None:
        crontab = _read_crontab()
        if CRON_MARKER not in crontab.lower():
            return

        remaining = _foreign_lines(crontab)
        if remaining:
            _write_crontab(remaining)
        else:
            try:
                subprocess.run(["crontab", "-r"], capture_output=True, timeout=10)
            except (subprocess.SubprocessError, OSError) as e:
                raise CronNotAvailableError(f"Cannot remove crontab: {e}") from e
        self._log("Removed cron entries")

    def build_cron_line(self, interval: ScheduleInterval) -> str:
        """Crontab line that triggers a scheduled run."""
        parts = [interval.cron_schedule, self._get_command()]
        if self._config_path:
            parts += ["--config", shlex.quote(str(self._config_path))]
        parts += ["run", "--scheduled", "--quiet"]
        return " ".join(parts)

    def _get_command(self) -> str:
        """Path of the installed sitevault script, else the module invocation."""
        return shutil.which("sitevault") or f"{shlex.quote(sys.executable)} -m sitevault"

    def _detect_best_mode(self) -> SchedulerMode:
        if platform.system().lower() != "windows" and shutil.which("crontab"):
            return SchedulerMode.SYSTEM_CRON
        return SchedulerMode.BUILT_IN

    # Status

    def get_schedule_status(self) -> ScheduleStatus:
        """Persisted state, with the daemon PID refreshed."""
        status = self._load_state()
        if status.mode == SchedulerMode.BUILT_IN.value:
            status.pid = read_pid(self._pid_file) if self._is_daemon_running() else None
        return status

    def get_logs(self, lines: int = 100) -> list[str]:
        """The last ``lines`` lines of the scheduler log, oldest first."""
        try:
            with open(self._log_file) as f:
                return f.readlines()[-lines:]
        except OSError:
            return []

    # Runs

    def run_scheduled_backup(self, backup_type: str | None = None) -> ScheduledRun:
        """
        Execute one scheduled run.

        Skipped while another process holds the run lock. Failures, including
        exceptions from the runner, are recorded in the returned run and the
        persisted state rather than raised.
        """
        run = ScheduledRun(started_at=datetime.now(UTC))

        if not self.run_lock.acquire():
            run.skipped = True
            run.error = f"Another backup run is in progress (pid {self.run_lock.holder()})"
            run.completed_at = datetime.now(UTC)
            self._log(f"Skipping scheduled backup: {run.error}")
            return run

        kind = backup_type or (self._settings.schedule.backup_type if self._settings else "all")
        try:
            self._log(f"Starting scheduled backup ({kind})")
            summary = self._get_runner()(kind)
        except Exception as e:
            logger.exception("Scheduled backup raised")
            run.error = str(e)
            self._log(f"Backup failed: {e}")
        else:
            for name, result in summary.results.items():
                if result.success:
                    run.kinds_succeeded.append(name)
                    self._log(f"  {name}: {result.message}")
                else:
                    run.kinds_failed.append(name)
                    self._log(f"  {name} FAILED: {result.message}")
            run.success = summary.success
            if not run.success:
                run.error = f"Failed kinds: {', '.join(summary.failed_kinds)}"
            self._log(
                f"Backup finished: {len(run.kinds_succeeded)} succeeded, "
                f"{len(run.kinds_failed)} failed"
            )
        finally:
            self.run_lock.release()

        run.completed_at = datetime.now(UTC)
        self._record(run)
        return run

    def _record(self, run: ScheduledRun) -> None:
        status = self._load_state()
        status.last_run = run.completed_at
        status.last_run_success = run.success
        status.last_run_error = run.error
        if status.enabled:
            interval = ScheduleInterval.from_string(status.interval)
            status.next_run = next_run_after(interval, datetime.now(UTC))
        self._save_state(status)

    def _get_runner(self) -> Callable[[str], RunSummary]:
        if self._runner is None:
            from sitevault.backup.service import BackupService
            from sitevault.config.settings import load_config

            self._runner = BackupService(self._settings or load_config()).run
        return self._runner

    # Built-in daemon

    def start_daemon(self, foreground: bool = False) -> None:
        """
        Start the built-in scheduler.

        Raises:
            SchedulerAlreadyRunningError: If a daemon is already running.
            SchedulerError: If no schedule is installed.
        """
        if self._is_daemon_running():
            raise SchedulerAlreadyRunningError(
                f"Scheduler daemon already running with PID {read_pid(self._pid_file)}"
            )
        status = self._load_state()
        if not status.enabled:
            raise SchedulerError("No schedule is installed")

        try:
            self._pid_file.write_text(str(os.getpid()))
        except OSError as e:
            raise SchedulerError(f"Cannot write PID file: {e}") from e
        status.pid = os.getpid()
        self._save_state(status)
        self._log(f"Scheduler daemon started (pid {os.getpid()})")

        self._stop_event.clear()
        if foreground:
            self._loop()
            return
        self._thread = threading.Thread(target=self._loop, name="sitevault-scheduler", daemon=True)
        self._thread.start()

    def stop_daemon(self) -> None:
        """
        Stop the built-in scheduler.

        Raises:
            SchedulerNotRunningError: If no daemon is running.
        """
        if not self._is_daemon_running():
            raise SchedulerNotRunningError("Scheduler daemon is not running")
        self._stop_daemon()

    def _loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                status = self._load_state()
                if not status.enabled:
                    self._log("Schedule disabled; daemon exiting")
                    break

                now = datetime.now(UTC)
                if status.next_run is None or now >= status.next_run:
                    self.run_scheduled_backup()
                    continue

                wait = min(POLL_SECONDS, (status.next_run - now).total_seconds())
                self._stop_event.wait(max(wait, 1))
        finally:
            self._pid_file.unlink(missing_ok=True)
            self._log("Scheduler daemon stopped")

    def _is_daemon_running(self) -> bool:
        pid = read_pid(self._pid_file)
        if pid is None:
            return False
        if pid_alive(pid):
            return True
        self._pid_file.unlink(missing_ok=True)
        return False

    def _stop_daemon(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=10)
            self._thread = None

        pid = read_pid(self._pid_file)
        if pid and pid != os.getpid():
            try:
                os.kill(pid, signal.SIGTERM)
                time.sleep(1)
                if pid_alive(pid):
                    os.kill(pid, signal.SIGKILL)
            except OSError as e:
                logger.warning("Could not signal scheduler daemon %s: %s", pid, e)
        self._pid_file.unlink(missing_ok=True)

        status = self._load_state()
        status.pid = None
        self._save_state(status)

    # Persistence

    def _load_state(self) -> ScheduleStatus:
        try:
            with open(self._state_file) as f:
                return ScheduleStatus.from_dict(json.load(f))
        except FileNotFoundError:
            return ScheduleStatus()
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable scheduler state %s: %s", self._state_file, e)
            return ScheduleStatus()

    def _save_state(self, status: ScheduleStatus) -> None:
        try:
            with open(self._state_file, "w") as f:
                json.dump(status.to_dict(), f, indent=2)
        except OSError as e:
            logger.error("Could not save scheduler state: %s", e)

    def _log(self, message: str) -> None:
        logger.info(message)
        self._run_log.info(message)
