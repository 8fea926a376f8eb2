"""
Base backup and delta retention for single tables.

This module handles:
- Consistent base backups tied to a replication slot's LSN
- Atomic replacement of the base backup file
- Base backup manifests
- Pruning delta files superseded by a newer base backup

Invariants:
    - A base backup and its LSN always describe the same instant
    - The base backup file is replaced atomically, never written in place
    - The delta file currently being written is never removed
"""

from .manifest import BaseBackupManifest, manifest_path, read_manifest, write_manifest
from .retention import delta_filename, parse_delta_filename, rotate_old_deltas
from .table_backup import (
    BaseBackupResult,
    DumpStats,
    ReplicationSlot,
    TableBackup,
    temp_slot_name,
)

__all__ = [
    "TableBackup",
    "BaseBackupResult",
    "DumpStats",
    "ReplicationSlot",
    "temp_slot_name",
    "BaseBackupManifest",
    "manifest_path",
    "read_manifest",
    "write_manifest",
    "delta_filename",
    "parse_delta_filename",
    "rotate_old_deltas",
]
