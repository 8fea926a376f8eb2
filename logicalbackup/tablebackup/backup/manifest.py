"""
Base backup manifest.

Each base backup file is accompanied by a JSON manifest describing the
instant it represents:

    <basebackup_path>.manifest.json

    {
        "table": "public.users",
        "lsn": "16/B374D848",
        "slot_name": "tempslot_4242",
        "snapshot_name": "00000003-00000002-1",
        "plugin": "pgoutput",
        "size_bytes": 1048576,
        "checksum": "sha256:...",
        "created_at": 1700000000000
    }

Invariants:
    - The manifest is written after the base backup file is in place
    - Manifests are replaced atomically, like the backup itself

How to change safely:
    - Add new fields, don't remove existing ones
    - from_dict() must keep reading manifests written by older versions
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import BackupFileError
from ..lsn import LSN

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"


@dataclass(frozen=True)
class BaseBackupManifest:
    """Metadata for one base backup.

    Attributes:
        table: Schema-qualified table name
        lsn: Consistent point the backup was taken at
        slot_name: Temporary slot that provided the consistent point
        snapshot_name: Exported snapshot the COPY ran under
        plugin: Logical decoding plugin of the slot
        size_bytes: Size of the base backup file
        checksum: SHA-256 of the base backup file
        created_at: Creation timestamp (Unix ms)
    """

    table: str
    lsn: LSN
    slot_name: str
    snapshot_name: str | None
    plugin: str
    size_bytes: int
    checksum: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "lsn": str(self.lsn),
            "slot_name": self.slot_name,
            "snapshot_name": self.snapshot_name,
            "plugin": self.plugin,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BaseBackupManifest:
        return cls(
            table=data["table"],
            lsn=LSN.parse(data["lsn"]),
            slot_name=data["slot_name"],
            snapshot_name=data.get("snapshot_name"),
            plugin=data.get("plugin", "pgoutput"),
            size_bytes=data["size_bytes"],
            checksum=data["checksum"],
            created_at=data["created_at"],
        )


def manifest_path(basebackup_path: str | os.PathLike[str]) -> Path:
    """Manifest location for a base backup file."""
    path = Path(basebackup_path)
    return path.with_name(path.name + MANIFEST_SUFFIX)


def write_manifest(basebackup_path: str | os.PathLike[str], manifest: BaseBackupManifest) -> Path:
    """Atomically write the manifest next to the base backup.

    Raises:
        BackupFileError: If the manifest cannot be written
    """
    target = manifest_path(basebackup_path)
    temp = target.with_name(target.name + ".new")
    try:
        with open(temp, "w", encoding="utf-8") as f:
            json.dump(manifest.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp, target)
    except OSError as e:
        temp.unlink(missing_ok=True)
        raise BackupFileError(f"could not write manifest {str(target)!r}: {e}") from e

    logger.debug("Wrote base backup manifest", extra={"path": str(target)})
    return target


def read_manifest(basebackup_path: str | os.PathLike[str]) -> BaseBackupManifest | None:
    """Load the manifest of a base backup, or None if there is none.

    Raises:
        BackupFileError: If the manifest exists but cannot be read or parsed
    """
    target = manifest_path(basebackup_path)
    try:
        with open(target, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise BackupFileError(f"could not read manifest {str(target)!r}: {e}") from e

    try:
        return BaseBackupManifest.from_dict(data)
    except (KeyError, ValueError) as e:
        raise BackupFileError(f"invalid manifest {str(target)!r}: {e}") from e
