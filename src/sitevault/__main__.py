"""
Entry point for running SiteVault as a module.

Usage:
    python -m sitevault [command] [options]
"""

from sitevault.cli import main

if __name__ == "__main__":
    main()
