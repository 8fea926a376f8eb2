"""
Table backup - one-shot entry point.

Takes one base backup of the configured table and, when a delta directory
and the current delta position are configured, prunes the delta files the
new backup supersedes. Scheduling repeated runs is left to the caller
(cron, a job runner, ...).

Usage:
    python -m logicalbackup.tablebackup.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Exit codes:
    0: backup (and rotation, if configured) succeeded
    1: configuration error or backup failure
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import json_log_formatter

from .backup import BaseBackupResult, TableBackup
from .config import AppConfig
from .errors import TableBackupError
from .lsn import LSN

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Application configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("psycopg").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


async def run(config: AppConfig) -> BaseBackupResult:
    """Run one backup cycle and the optional delta rotation.

    Args:
        config: Application configuration

    Returns:
        Result of the base backup

    Raises:
        TableBackupError: If any step fails
    """
    basebackup_path = Path(config.backup.basebackup_path)
    try:
        basebackup_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise TableBackupError(f"could not create {basebackup_path.parent}: {e}") from e

    backup = TableBackup(
        config.backup.identifier,
        basebackup_path,
        config.postgres.to_params(),
        plugin=config.backup.output_plugin,
        write_manifest=config.backup.write_manifest,
    )
    result = await backup.run_basebackup()

    if config.backup.rotation_enabled:
        current = LSN.parse(config.backup.current_delta_lsn or "")
        removed = backup.rotate_old_deltas(config.backup.deltas_dir or "", current)
        logger.info(
            "Delta rotation finished",
            extra={"removed": len(removed), "current_delta_lsn": str(current)},
        )

    return result


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = AppConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)
    config.log_config()

    try:
        result = asyncio.run(run(config))
    except TableBackupError as e:
        logger.error(f"Base backup failed: {e}", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("Base backup interrupted")
        sys.exit(1)

    logger.info(f"Base backup of {result.table} written at LSN {result.lsn}")


if __name__ == "__main__":
    main()
