"""
SiteVault - Backup and restore engine for web application deployments.

Snapshot the database, the file tree, and the configuration bundle of a
deployment, keep the snapshots in one flat directory, and restore any of
them back into the live site.

Key Features:
    - Portable SQL dumps of the application database (gzip-compressed)
    - tar.gz or zip archives of the storage tree and config files
    - Catalog with paging and dashboard statistics
    - Destructive database restore that keeps the live activity log
    - Scheduled, non-overlapping daily runs
    - Local JSON API and CLI for administrators

Design Principles:
    - Best-effort recoverability: one failing part never hides the rest
    - Portability: the in-process dump path needs no external tools
    - Transparency: every restore produces a readable transcript
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from sitevault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
