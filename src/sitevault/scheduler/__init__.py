"""
Scheduler for automated backups.

Runs backups on a cadence via system cron or a built-in scheduler for
cross-platform support. Default cadence is daily at 02:00.

Two modes are available:
    - System cron: Uses the system crontab on Unix-like systems.
      The cron entry calls ``sitevault run --scheduled``.

    - Built-in scheduler: Uses Python threading for cross-platform support.
      Requires a running daemon process.

Either way, a run lock file keeps two backup runs from overlapping.

Usage:
    from sitevault.scheduler import Scheduler, ScheduleInterval

    scheduler = Scheduler(settings=settings)
    scheduler.install_schedule(ScheduleInterval.DAILY)

    status = scheduler.get_schedule_status()
    print(f"Next run: {status.next_run}")
"""

from sitevault.scheduler.cron import (
    CronNotAvailableError,
    RunLock,
    ScheduledRun,
    ScheduleInterval,
    Scheduler,
    SchedulerAlreadyRunningError,
    SchedulerError,
    SchedulerMode,
    SchedulerNotRunningError,
    ScheduleStatus,
)

__all__ = [
    # Main class
    "Scheduler",
    "RunLock",
    # Enums
    "ScheduleInterval",
    "SchedulerMode",
    # Dataclasses
    "ScheduleStatus",
    "ScheduledRun",
    # Errors
    "SchedulerError",
    "CronNotAvailableError",
    "SchedulerAlreadyRunningError",
    "SchedulerNotRunningError",
]
