"""
Configuration management for table backups.

All configuration is done via environment variables; the libpq-style PG*
variables are honored for the connection. The core TableBackup class takes
plain constructor arguments, only main.py reads this module.

Invariants:
    - All settings have sensible defaults for local development
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep PG* names aligned with libpq so existing environments keep working
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

from .backup.table_backup import DEFAULT_PLUGIN
from .errors import LSNParseError
from .identifier import TableIdentifier
from .lsn import LSN

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostgresConfig:
    """Connection settings for the source database.

    Attributes:
        host: Server host or socket directory
        port: Server port
        user: Role to connect as (needs the REPLICATION attribute)
        password: Password (optional, .pgpass is honored by libpq)
        dbname: Database holding the table
        sslmode: libpq sslmode
        application_name: Reported in pg_stat_activity
        connect_timeout: Connection timeout in seconds
    """

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str | None = None
    dbname: str = "postgres"
    sslmode: str | None = None
    application_name: str = "logical-table-backup"
    connect_timeout: int = 10

    @classmethod
    def from_env(cls) -> PostgresConfig:
        """Load configuration from environment variables."""
        return cls(
            host=os.getenv("PGHOST", "localhost"),
            port=int(os.getenv("PGPORT", "5432")),
            user=os.getenv("PGUSER", "postgres"),
            password=os.getenv("PGPASSWORD"),
            dbname=os.getenv("PGDATABASE", "postgres"),
            sslmode=os.getenv("PGSSLMODE"),
            application_name=os.getenv("PGAPPNAME", "logical-table-backup"),
            connect_timeout=int(os.getenv("PGCONNECT_TIMEOUT", "10")),
        )

    def to_params(self) -> dict[str, Any]:
        """Base connection parameters; None values are left to libpq."""
        return {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "dbname": self.dbname,
            "sslmode": self.sslmode,
            "application_name": self.application_name,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class BackupConfig:
    """What to back up and where.

    Attributes:
        table: Schema-qualified table name
        basebackup_path: Base backup file location
        deltas_dir: Delta directory to prune (optional)
        current_delta_lsn: Start LSN of the delta file being written, in
            server form (required to prune)
        output_plugin: Logical decoding plugin for the temporary slot
        write_manifest: Write a manifest next to the base backup
    """

    table: str = ""
    basebackup_path: str = ""
    deltas_dir: str | None = None
    current_delta_lsn: str | None = None
    output_plugin: str = DEFAULT_PLUGIN
    write_manifest: bool = True

    @classmethod
    def from_env(cls) -> BackupConfig:
        """Load configuration from environment variables."""
        return cls(
            table=os.getenv("BACKUP_TABLE", ""),
            basebackup_path=os.getenv("BASEBACKUP_PATH", ""),
            deltas_dir=os.getenv("DELTAS_DIR"),
            current_delta_lsn=os.getenv("CURRENT_DELTA_LSN"),
            output_plugin=os.getenv("OUTPUT_PLUGIN", DEFAULT_PLUGIN),
            write_manifest=os.getenv("WRITE_MANIFEST", "true").lower() == "true",
        )

    @property
    def identifier(self) -> TableIdentifier:
        return TableIdentifier.parse(self.table)

    @property
    def rotation_enabled(self) -> bool:
        return bool(self.deltas_dir) and bool(self.current_delta_lsn)


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class AppConfig:
    """Complete configuration for one backup run.

    Attributes:
        postgres: Connection settings
        backup: Table and file settings
        observability: Logging settings
    """

    postgres: PostgresConfig = field(default_factory=PostgresConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            postgres=PostgresConfig.from_env(),
            backup=BackupConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.backup.table:
            raise ValueError("BACKUP_TABLE is required")
        TableIdentifier.parse(self.backup.table)

        if not self.backup.basebackup_path:
            raise ValueError("BASEBACKUP_PATH is required")

        if self.backup.current_delta_lsn:
            try:
                LSN.parse(self.backup.current_delta_lsn)
            except LSNParseError:
                raise ValueError(
                    f"Invalid CURRENT_DELTA_LSN '{self.backup.current_delta_lsn}'"
                )

        if self.observability.log_format not in ("json", "text"):
            raise ValueError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text"
            )

        parent = os.path.dirname(os.path.abspath(self.backup.basebackup_path))
        if not os.path.isdir(parent):
            logger.warning(
                f"Base backup directory does not exist: {parent}. "
                "It will be created before the first backup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Backup configuration loaded",
            extra={
                "pg_host": self.postgres.host,
                "pg_port": self.postgres.port,
                "pg_user": self.postgres.user,
                "pg_dbname": self.postgres.dbname,
                "table": self.backup.table,
                "basebackup_path": self.backup.basebackup_path,
                "deltas_dir": self.backup.deltas_dir,
                "output_plugin": self.backup.output_plugin,
                "log_level": self.observability.log_level,
            },
        )
