"""
CLI runner module.

Provides commands:
- process / reprocess: Run the stage pipeline on email attachments
- logs / files: Inspect stage logs and document statuses
- import-statement / reconcile: Bank statement reconciliation
- status: Processing statistics
- init-config: Write a default config file
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
