"""
Delta file retention.

Delta files are named by the LSN at which they start, in lowercase
hexadecimal, optionally followed by ``.<suffix>``:

    deltas/16b374d848
    deltas/16b374d848.partial

Once a base backup with consistent point T exists, every delta file
starting strictly before T is covered by that backup and can be removed.

Invariants:
    - The current delta file is never removed
    - Files at or after the threshold are never removed
    - Entries are visited in sorted name order; an unparsable name stops the
      pass, so entries sorted before it may already be removed and nothing
      after it is touched
    - An old entry that is a directory is removed only when empty; a
      non-empty one stops the pass like any other removal failure

How to change safely:
    - The scan is fail-fast; switching to skip-and-warn changes what an
      operator sees on a corrupted directory, decide it deliberately
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..errors import BackupFileError, DeltaFilenameError, LSNParseError
from ..lsn import LSN

logger = logging.getLogger(__name__)


def delta_filename(lsn: LSN, suffix: str | None = None) -> str:
    """Build the delta filename for a start position."""
    if suffix:
        return f"{lsn.hex}.{suffix}"
    return lsn.hex


def parse_delta_filename(filename: str) -> LSN:
    """Extract the start LSN from a delta filename.

    Everything before the first "." is the position.

    Raises:
        DeltaFilenameError: If the leading segment is not a hexadecimal LSN
    """
    lsn_str = filename.split(".", 1)[0]
    try:
        return LSN.from_hex(lsn_str)
    except LSNParseError as e:
        raise DeltaFilenameError(filename, f"could not parse filename {filename!r}: {e}") from e


def rotate_old_deltas(deltas_dir: str | os.PathLike[str], current: LSN, threshold: LSN) -> list[Path]:
    """Remove delta files made obsolete by a base backup.

    Args:
        deltas_dir: Directory holding delta files
        current: Start LSN of the delta file being written right now
        threshold: Consistent point of the newest base backup

    Returns:
        Paths removed, in scan order

    Raises:
        BackupFileError: If the directory cannot be listed or a file cannot
            be removed; files not yet visited are untouched
        DeltaFilenameError: If an entry does not follow the naming convention
    """
    directory = Path(deltas_dir)
    try:
        filenames = sorted(os.listdir(directory))
    except OSError as e:
        raise BackupFileError(f"could not list directory: {e}") from e

    removed: list[Path] = []
    for filename in filenames:
        lsn = parse_delta_filename(filename)
        if lsn == current:
            continue

        if lsn < threshold:
            path = directory / filename
            try:
                if path.is_dir() and not path.is_symlink():
                    path.rmdir()
                else:
                    path.unlink()
            except OSError as e:
                raise BackupFileError(f"could not remove {str(path)!r} file: {e}") from e
            removed.append(path)
            logger.debug("Removed delta file", extra={"path": str(path), "lsn": str(lsn)})

    if removed:
        logger.info(
            "Rotated old deltas",
            extra={
                "deltas_dir": str(directory),
                "removed": len(removed),
                "threshold": str(threshold),
            },
        )
    return removed
