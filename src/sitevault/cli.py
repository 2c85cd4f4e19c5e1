"""
Command-line interface for SiteVault.

Provides commands for running, browsing, downloading, deleting and restoring
backups, serving the local API, and managing the backup schedule.

Every backup command works locally by default, or against a running API
server with ``--server URL``.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

from sitevault import __version__
from sitevault.backup.models import BACKUP_KINDS, DownloadPayload
from sitevault.client import ApiClientError, ApiNotFoundError, BackupApiClient
from sitevault.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

if TYPE_CHECKING:
    from sitevault.backup.service import BackupService
    from sitevault.scheduler import ScheduleStatus

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON/CSV).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a verbose message only if verbosity is high enough."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def format_as_csv(headers: list[str], rows: list[list[Any]]) -> str:
    """
    Format data as CSV string.

    Args:
        headers: Column headers.
        rows: List of row data (each row is a list of values).

    Returns:
        CSV formatted string.
    """
    import csv
    import io

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue()


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the SiteVault CLI."""
    parser = argparse.ArgumentParser(
        prog="sitevault",
        description="Backup and restore engine for web application deployments",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"sitevault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.sitevault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    parser.add_argument(
        "--server",
        metavar="URL",
        help="Send backup commands to a running API server instead of running locally",
    )

    parser.add_argument(
        "--token",
        metavar="TOKEN",
        help="API token for --server (default: server.api_token from config)",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create a default configuration",
        description="Write a default config file and create the backup directory.",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing config file",
    )
    init_parser.set_defaults(func=cmd_init)

    # run command
    run_parser = subparsers.add_parser(
        "run",
        help="Run a backup",
        description="Back up the database, storage tree, and/or configuration files.",
    )
    run_parser.add_argument(
        "--type",
        dest="backup_type",
        choices=["all", *BACKUP_KINDS],
        help="What to back up (default: all)",
    )
    run_parser.add_argument(
        "--dry-run", "--show-only",
        action="store_true",
        dest="dry_run",
        help="Show what would be backed up without writing anything",
    )
    run_parser.add_argument(
        "--scheduled",
        action="store_true",
        help="Run as the scheduled job (skips if another run is in progress)",
    )
    run_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    run_parser.set_defaults(func=cmd_run)

    # list command
    list_parser = subparsers.add_parser(
        "list",
        help="List backups",
        description="List backups in the backup directory, newest first.",
    )
    list_parser.add_argument(
        "--page",
        type=int,
        default=1,
        help="Page number (default: 1)",
    )
    list_parser.add_argument(
        "--per-page",
        type=int,
        default=20,
        dest="per_page",
        help="Backups per page (default: 20)",
    )
    list_parser.add_argument(
        "--format",
        choices=["table", "json", "csv"],
        default="table",
        help="Output format (default: table)",
    )
    list_parser.set_defaults(func=cmd_list)

    # stats command
    stats_parser = subparsers.add_parser(
        "stats",
        help="Show backup statistics",
        description="Show counts, total size, and newest/oldest backup.",
    )
    stats_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    stats_parser.set_defaults(func=cmd_stats)

    # download command
    download_parser = subparsers.add_parser(
        "download",
        help="Download a backup",
        description="Copy a backup to a local file.",
    )
    download_parser.add_argument("backup_id", metavar="ID", help="Backup id (see 'sitevault list')")
    download_parser.add_argument(
        "--output", "-o",
        metavar="PATH",
        help="Output file or directory (default: current directory)",
    )
    download_parser.set_defaults(func=cmd_download)

    # delete command
    delete_parser = subparsers.add_parser(
        "delete",
        help="Delete a backup",
        description="Permanently delete a backup file.",
    )
    delete_parser.add_argument("backup_id", metavar="ID", help="Backup id (see 'sitevault list')")
    delete_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    delete_parser.set_defaults(func=cmd_delete)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a backup",
        description="Restore a backup into the live deployment. Database restores "
        "replace every table in the dump but keep the activity log.",
    )
    restore_parser.add_argument("backup_id", metavar="ID", help="Backup id (see 'sitevault list')")
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    restore_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Start the local API server",
        description="Serve the backup API over HTTP.",
    )
    serve_parser.add_argument(
        "--host",
        help="Server host (default: server.host from config)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        help="Server port (default: server.port from config)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # schedule command
    schedule_parser = subparsers.add_parser(
        "schedule",
        help="Configure scheduled backups",
        description="Set up automated backups.",
    )
    schedule_parser.add_argument(
        "--interval",
        choices=["hourly", "daily", "weekly"],
        help="Backup interval",
    )
    schedule_group = schedule_parser.add_mutually_exclusive_group()
    schedule_group.add_argument(
        "--enable",
        action="store_true",
        help="Enable scheduled backups",
    )
    schedule_group.add_argument(
        "--disable",
        action="store_true",
        help="Disable scheduled backups",
    )
    schedule_group.add_argument(
        "--start-daemon",
        action="store_true",
        dest="start_daemon",
        help="Start the built-in scheduler daemon",
    )
    schedule_group.add_argument(
        "--stop-daemon",
        action="store_true",
        dest="stop_daemon",
        help="Stop the built-in scheduler daemon",
    )
    schedule_parser.add_argument(
        "--mode",
        choices=["system_cron", "built_in"],
        help="Scheduler mode (default: auto-detect)",
    )
    schedule_parser.add_argument(
        "--foreground",
        action="store_true",
        help="Run daemon in foreground (with --start-daemon)",
    )
    schedule_parser.add_argument(
        "--logs",
        action="store_true",
        help="Show recent scheduler logs",
    )
    schedule_parser.set_defaults(func=cmd_schedule)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _get_service(settings: Settings) -> BackupService:
    from sitevault.backup.service import BackupService

    return BackupService(settings)


def _get_client(args: argparse.Namespace, settings: Settings) -> BackupApiClient:
    return BackupApiClient(
        args.server,
        token=args.token if args.token is not None else settings.server.api_token,
        request_timeout=settings.server.request_timeout,
        admin_timeout=settings.server.admin_timeout,
    )


def cmd_init(args: argparse.Namespace) -> int:
    """Create a default configuration."""
    config_path = Path(args.config) if args.config else get_config_path()

    output("SiteVault Initialization")
    output("=" * 50)
    output()

    if config_path.exists() and not args.force:
        output(f"Configuration already exists: {config_path}")
        output("Use --force to overwrite it with defaults.")
        return 0

    settings = Settings()
    save_config(settings, config_path)
    output(f"Configuration file created: {config_path}")

    backup_dir = Path(settings.backup_dir).expanduser()
    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
        output(f"Backup directory: {backup_dir}")
    except OSError as e:
        output_error(f"Warning: could not create backup directory {backup_dir}: {e}")

    output()
    output("Next steps:")
    output(f"  1. Edit {config_path} to point at your database and storage")
    output("  2. Run 'sitevault run --dry-run' to check what would be backed up")
    output("  3. Run 'sitevault schedule --enable' for daily backups")
    output()
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a backup."""
    settings = _load_settings(args)

    if args.scheduled:
        from sitevault.scheduler import Scheduler

        scheduler = Scheduler(settings=settings)
        run = scheduler.run_scheduled_backup(args.backup_type)
        if args.json:
            output(json.dumps(run.to_dict(), indent=2), force=True)
        elif run.skipped:
            output(f"Skipped: {run.error}")
        elif run.success:
            output(f"Scheduled backup completed: {', '.join(run.kinds_succeeded)}")
        else:
            output_error(f"Scheduled backup failed: {run.error}")
        return 0 if run.success or run.skipped else 1

    kind = args.backup_type or "all"

    if args.server:
        try:
            summary = _get_client(args, settings).run(kind, dry_run=args.dry_run)
        except ApiClientError as e:
            output_error(f"Error: {e}")
            return 1
    else:
        summary = _get_service(settings).run(kind, dry_run=args.dry_run).to_dict()

    if args.json:
        output(json.dumps(summary, indent=2, default=str), force=True)
        return 0 if summary.get("success") else 1

    output("SiteVault Dry Run" if args.dry_run else "SiteVault Backup")
    output("=" * 50)
    output()
    for name, result in summary.get("results", {}).items():
        mark = "OK  " if result.get("success") else "FAIL"
        output(f"  [{mark}] {name:<10} {result.get('message', '')}")
        if result.get("path"):
            output_verbose(f"         {result['path']}")
    output()

    if summary.get("success"):
        output("All backups completed." if not args.dry_run else "Dry run complete.")
        return 0

    failed = [k for k, r in summary.get("results", {}).items() if not r.get("success")]
    output_error(f"Backup failed for: {', '.join(failed)}")
    return 1


def cmd_list(args: argparse.Namespace) -> int:
    """List backups."""
    settings = _load_settings(args)

    if args.server:
        try:
            page = _get_client(args, settings).list_backups(args.page, args.per_page)
        except ApiClientError as e:
            output_error(f"Error: {e}")
            return 1
    else:
        page = _get_service(settings).list(args.page, args.per_page).to_dict()

    backups = page.get("backups", [])

    if args.format == "json":
        output(json.dumps(page, indent=2, default=str), force=True)
        return 0

    if args.format == "csv":
        rows = [
            [b["id"], b["filename"], b["type"], b["size"], b["created_at"]]
            for b in backups
        ]
        output(format_as_csv(["id", "filename", "type", "size", "created_at"], rows), force=True)
        return 0

    if not backups:
        output("No backups found.")
        return 0

    output(f"{'ID':<32}  {'FILENAME':<36}  {'TYPE':<8}  {'SIZE':>10}  CREATED")
    output("-" * 110)
    for b in backups:
        output(
            f"{b['id']:<32}  {b['filename']:<36}  {b['type']:<8}  "
            f"{b['size_formatted']:>10}  {b['created_at']}"
        )
    output()
    output(
        f"Page {page.get('page', 1)} of {page.get('total_pages', 1)} "
        f"({page.get('total', len(backups))} backups)"
    )
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Show backup statistics."""
    settings = _load_settings(args)

    if args.server:
        try:
            stats = _get_client(args, settings).statistics()
        except ApiClientError as e:
            output_error(f"Error: {e}")
            return 1
    else:
        stats = _get_service(settings).statistics().to_dict()

    if args.json:
        output(json.dumps(stats, indent=2), force=True)
        return 0

    output("Backup Statistics")
    output("=" * 50)
    output()
    output(f"  Total backups:    {stats.get('total_backups', 0)}")
    output(f"  Total size:       {stats.get('total_size_formatted', '0 B')}")
    output(f"  Database backups: {stats.get('database_backups', 0)}")
    output(f"  Storage backups:  {stats.get('storage_backups', 0)}")
    output(f"  Config backups:   {stats.get('config_backups', 0)}")
    output(f"  Latest backup:    {stats.get('latest_backup') or 'never'}")
    output(f"  Oldest backup:    {stats.get('oldest_backup') or 'never'}")
    output()
    return 0


def cmd_download(args: argparse.Namespace) -> int:
    """Download a backup."""
    from sitevault.backup.models import ArtifactNotFoundError

    settings = _load_settings(args)

    try:
        if args.server:
            payload: DownloadPayload = _get_client(args, settings).download(args.backup_id)
        else:
            payload = _get_service(settings).download(args.backup_id)
    except (ArtifactNotFoundError, ApiNotFoundError):
        output_error(f"Backup file not found: {args.backup_id}")
        return 1
    except ApiClientError as e:
        output_error(f"Error: {e}")
        return 1

    destination = Path(args.output) if args.output else Path.cwd()
    if destination.is_dir():
        destination = destination / payload.filename

    try:
        destination.write_bytes(payload.content)
    except OSError as e:
        output_error(f"Error writing {destination}: {e}")
        return 1

    output(f"Downloaded {payload.filename} ({payload.content_type}) to {destination}")
    return 0


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N]: ").strip().lower()
    return response in ("y", "yes")


def cmd_delete(args: argparse.Namespace) -> int:
    """Delete a backup."""
    settings = _load_settings(args)

    if not args.force and not _confirm(f"Delete backup {args.backup_id}?"):
        output("Delete cancelled.")
        return 0

    if args.server:
        try:
            result = _get_client(args, settings).delete(args.backup_id)
        except ApiNotFoundError:
            output_error("Backup file not found")
            return 1
        except ApiClientError as e:
            output_error(f"Error: {e}")
            return 1
    else:
        result = _get_service(settings).delete(args.backup_id).to_dict()

    if result.get("success"):
        output(result.get("message", "Backup deleted successfully"))
        return 0

    output_error(result.get("message", "Failed to delete backup"))
    return 1


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a backup into the live deployment."""
    settings = _load_settings(args)

    if not args.force:
        output("WARNING: This will overwrite live data with the contents of the backup.")
        output("Database restores replace every table contained in the dump.")
        output()
        if not _confirm("Proceed with restore?"):
            output("Restore cancelled.")
            return 0

    output("Restoring...")

    if args.server:
        try:
            result = _get_client(args, settings).restore(args.backup_id)
        except ApiNotFoundError:
            output_error("Backup file not found")
            return 1
        except ApiClientError as e:
            output_error(f"Error: {e}")
            return 1
    else:
        result = _get_service(settings).restore(args.backup_id).to_dict()

    if args.json:
        output(json.dumps(result, indent=2), force=True)
        return 0 if result.get("success") else 1

    if result.get("not_found"):
        output_error("Backup file not found")
        return 1

    if result.get("output"):
        output()
        output(result["output"])
        output()

    if result.get("success"):
        output(result.get("message", "Restore completed"))
        if result.get("audit_rows_preserved"):
            output(
                f"Activity log rows kept: {result.get('audit_rows_restored', 0)}"
                f"/{result['audit_rows_preserved']}"
            )
        return 0

    output_error(result.get("message") or f"Restore failed: {result.get('error')}")
    return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the local API server."""
    from sitevault.server import BackupApiServer

    settings = _load_settings(args)
    server = BackupApiServer(
        _get_service(settings),
        host=args.host or settings.server.host,
        port=args.port if args.port is not None else settings.server.port,
        api_token=settings.server.api_token,
        request_timeout=settings.server.request_timeout,
        admin_timeout=settings.server.admin_timeout,
    )

    output(f"SiteVault API listening on {server.get_url()}")
    output("Press Ctrl+C to stop.")

    try:
        if not server.start(blocking=True):
            output_error("Error: could not start the API server (is the port in use?)")
            return 1
    finally:
        server.stop()
    return 0


def _print_schedule_status(status: ScheduleStatus) -> None:
    when = "%Y-%m-%d %H:%M UTC"
    output("Backup Schedule")
    output("=" * 50)
    output()
    if not status.enabled:
        output("  Scheduled backups are off.")
        output()
        output("  Turn on daily backups at 02:00 with: sitevault schedule --enable")
        return

    output(f"  Interval:  {status.interval} ({status.mode})")
    if status.next_run:
        output(f"  Next run:  {status.next_run.strftime(when)}")
    if status.last_run:
        result = "ok" if status.last_run_success else f"failed ({status.last_run_error})"
        output(f"  Last run:  {status.last_run.strftime(when)}, {result}")
    if status.pid:
        output(f"  Daemon:    pid {status.pid}")


def cmd_schedule(args: argparse.Namespace) -> int:
    """Configure scheduled backups."""
    from sitevault.scheduler import Scheduler, SchedulerError, SchedulerNotRunningError

    settings = _load_settings(args)
    scheduler = Scheduler(
        settings=settings,
        config_path=Path(args.config).absolute() if args.config else None,
    )

    if args.logs:
        entries = scheduler.get_logs(lines=50)
        for line in entries:
            output(line.rstrip())
        if not entries:
            output("The scheduler has not logged anything yet.")
        return 0

    try:
        if args.start_daemon:
            if args.foreground:
                output("Scheduler running in the foreground. Press Ctrl+C to stop.")
            scheduler.start_daemon(foreground=args.foreground)
            if not args.foreground:
                output("Scheduler daemon started.")
            return 0

        if args.stop_daemon:
            try:
                scheduler.stop_daemon()
            except SchedulerNotRunningError:
                output("No scheduler daemon is running.")
                return 0
            output("Scheduler daemon stopped.")
            return 0

        if args.disable:
            scheduler.uninstall_schedule()
            output("Scheduled backups disabled.")
            return 0

        if args.enable or args.interval:
            if not args.enable and not scheduler.get_schedule_status().enabled:
                output_error("Scheduled backups are off; add --enable to turn them on.")
                return 1
            status = scheduler.install_schedule(
                args.interval or settings.schedule.interval, mode=args.mode
            )
            output(f"Scheduled {status.interval} backups ({status.mode}).")
            if status.mode == "built_in":
                output("Start the daemon with: sitevault schedule --start-daemon")
            _print_schedule_status(status)
            return 0

    except SchedulerError as e:
        output_error(f"Scheduler error: {e}")
        return 1

    _print_schedule_status(scheduler.get_schedule_status())
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for the SiteVault CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
