"""
Logical table backup - consistent base backups for logical replication.

This package takes point-in-time copies of single PostgreSQL tables and ties
each copy to the exact WAL position logical decoding must resume from:

    ┌──────────────┐  replication=database  ┌──────────────────────────┐
    │ TableBackup  │───────────────────────▶│ PostgreSQL               │
    └──────┬───────┘                        │  BEGIN REPEATABLE READ   │
           │                                │  LOCK TABLE              │
           │                                │  CREATE_REPLICATION_SLOT │
           │                                │    TEMPORARY ... USE_    │
           │                                │    SNAPSHOT  -> LSN      │
           │                                │  COPY ... TO STDOUT      │
           │                                └──────────────────────────┘
           ▼
    basebackup file (<path>.new -> <path>)   deltas/<hex lsn>[.suffix]
                                              pruned below the base LSN

Invariants:
    - A base backup and its LSN always refer to the same snapshot
    - Base backup files are never observably partial
    - Delta files are only removed once a newer base backup covers them

How to change safely:
    - Run the integration tests against a server with wal_level=logical
    - Keep delta file naming compatible with the delta writer
"""

from ._version import __version__
from .backup import BaseBackupResult, TableBackup
from .identifier import Sanitizer, TableIdentifier
from .lsn import LSN, ZERO_LSN

__all__ = [
    "__version__",
    "TableBackup",
    "BaseBackupResult",
    "TableIdentifier",
    "Sanitizer",
    "LSN",
    "ZERO_LSN",
]
