"""
Consistent base backups of a single table.

A TableBackup copies one table to a local file and records the WAL position
(LSN) the copy corresponds to, so that logical decoding can resume from
exactly that point without gaps or duplicates.

Backup cycle:
    1. Open a replication-mode session (replication=database)
    2. BEGIN ISOLATION LEVEL REPEATABLE READ READ ONLY
    3. LOCK TABLE ... IN ACCESS SHARE MODE
    4. CREATE_REPLICATION_SLOT tempslot_<pid> TEMPORARY LOGICAL ... USE_SNAPSHOT
       -> the slot's consistent point is the backup LSN, and the transaction
          now reads the slot's snapshot
    5. COPY table TO STDOUT into <path>.new, then rename onto <path>
    6. COMMIT (the temporary slot goes away with the session)

Invariants:
    - At most one session and one transaction are owned at any time
    - basebackup_lsn is only ever set by create_temp_replication_slot() and is
      cleared by tx_begin(), so an export is never tagged with an older cycle's
      position
    - The base backup file is never observably partial
    - Nothing is retried here; every failure goes to the caller

How to change safely:
    - Keep LOCK TABLE before CREATE_REPLICATION_SLOT: USE_SNAPSHOT must run
      before the transaction takes its first snapshot
    - Test failure paths with InMemoryServer.inject_failure()
"""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from ..errors import (
    BackupConnectionError,
    BackupFileError,
    CopyDumpError,
    LSNParseError,
    NoConnectionError,
    NoConsistentPointError,
    NoTransactionError,
    NullConsistentPointError,
    ProtocolError,
    StateError,
    TableBackupError,
    TransactionInProgressError,
)
from ..identifier import Sanitizer
from ..lsn import LSN, ZERO_LSN
from ..session.base import (
    REPLICATION_PARAMS,
    ReplicationSession,
    SessionConnector,
    SessionError,
    SessionTransaction,
    merge_params,
)
from . import manifest as manifest_mod
from .retention import rotate_old_deltas

logger = logging.getLogger(__name__)

ISOLATION_LEVEL = "REPEATABLE READ"
TEMP_SUFFIX = ".new"
DEFAULT_PLUGIN = "pgoutput"


def temp_slot_name(backend_pid: int) -> str:
    """Name of the temporary slot owned by a server backend."""
    return f"tempslot_{backend_pid}"


@dataclass(frozen=True)
class ReplicationSlot:
    """Result of creating a temporary replication slot.

    Attributes:
        name: Slot name as reported by the server
        lsn: Consistent point
        snapshot_name: Exported snapshot identifier
        plugin: Output plugin
    """

    name: str
    lsn: LSN
    snapshot_name: str | None
    plugin: str


@dataclass(frozen=True)
class DumpStats:
    """Size and checksum of a written base backup file."""

    size_bytes: int
    checksum: str


@dataclass(frozen=True)
class BaseBackupResult:
    """Outcome of a complete backup cycle.

    Attributes:
        table: Table that was backed up
        lsn: Consistent point of the backup
        slot: Temporary slot that provided the consistent point
        path: Base backup file
        size_bytes: Size of the base backup file
        checksum: SHA-256 of the base backup file
        duration_ms: Wall time of the whole cycle
        manifest_path: Manifest file, if one was written
    """

    table: str
    lsn: LSN
    slot: ReplicationSlot
    path: Path
    size_bytes: int
    checksum: str
    duration_ms: int
    manifest_path: Path | None = None


class _HashingWriter:
    """File wrapper that counts and hashes everything written through it."""

    def __init__(self, fp: BinaryIO) -> None:
        self._fp = fp
        self._sha256 = hashlib.sha256()
        self.size = 0

    def write(self, data: Any) -> int:
        self._sha256.update(data)
        self.size += len(data)
        return self._fp.write(data)

    @property
    def checksum(self) -> str:
        return f"sha256:{self._sha256.hexdigest()}"


class TableBackup:
    """Base backup of one table at a consistent WAL position.

    Each instance exclusively owns its session and transaction and must be
    driven by a single task. Back up several tables concurrently by using one
    instance per table.

    Attributes:
        identifier: Table to back up
        basebackup_path: Final location of the base backup file
        connection_params: libpq parameters merged with replication overrides
        plugin: Logical decoding plugin of the temporary slot
        conn: Open session, or None
        tx: Open transaction, or None
        basebackup_lsn: Consistent point of the current cycle, ZERO_LSN if unset

    Example:
        >>> backup = TableBackup(
        ...     TableIdentifier("public", "users"),
        ...     "/var/lib/backups/users/basebackup.copy",
        ...     {"host": "localhost", "dbname": "app"},
        ... )
        >>> result = await backup.run_basebackup()
        >>> backup.rotate_old_deltas("/var/lib/backups/users/deltas", current_lsn)
    """

    def __init__(
        self,
        identifier: Sanitizer,
        basebackup_path: str | os.PathLike[str],
        connection_params: dict[str, Any] | None = None,
        *,
        connector: SessionConnector | None = None,
        plugin: str = DEFAULT_PLUGIN,
        write_manifest: bool = True,
    ) -> None:
        """Initialize the backup.

        Args:
            identifier: Table to back up
            basebackup_path: Where the base backup file goes
            connection_params: Base libpq connection parameters
            connector: Opens sessions (defaults to PostgresReplicationSession)
            plugin: Output plugin for the temporary slot
            write_manifest: Write a manifest after each successful cycle
        """
        if connector is None:
            from ..session.postgres import PostgresReplicationSession

            connector = PostgresReplicationSession.connect

        self.identifier = identifier
        self.basebackup_path = Path(basebackup_path)
        self.connection_params = dict(connection_params or {})
        self.plugin = plugin
        self.write_manifest = write_manifest
        self._connector = connector

        self.conn: ReplicationSession | None = None
        self.tx: SessionTransaction | None = None
        self.basebackup_lsn: LSN = ZERO_LSN

    @property
    def temp_path(self) -> Path:
        """Temporary file the table is streamed into."""
        return self.basebackup_path.with_name(self.basebackup_path.name + TEMP_SUFFIX)

    # Connection

    async def connect(self) -> None:
        """Open a replication session and load server metadata.

        Raises:
            StateError: If a session is already open
            BackupConnectionError: If opening or initializing the session fails
        """
        if self.conn is not None:
            raise StateError("connection already open")

        params = merge_params(self.connection_params, REPLICATION_PARAMS)
        try:
            session = await self._connector(params, prefer_simple_protocol=True)
        except SessionError as e:
            raise BackupConnectionError(f"could not connect: {e}") from e

        try:
            server_info = await session.load_server_info()
        except SessionError as e:
            await self._close_quietly(session)
            raise BackupConnectionError(f"could not fetch conn info: {e}") from e

        self.conn = session
        logger.info(
            "Connected for base backup",
            extra={"table": str(self.identifier), "backend_pid": session.backend_pid,
                   **server_info.to_dict()},
        )

    async def disconnect(self) -> None:
        """Close the session; an open transaction is discarded with it.

        Raises:
            NoConnectionError: If no session is open
            ProtocolError: If closing fails
        """
        if self.conn is None:
            raise NoConnectionError()

        conn = self.conn
        self.conn = None
        self.tx = None
        try:
            await conn.close()
        except SessionError as e:
            raise ProtocolError(f"could not close connection: {e}") from e

    def temp_slot_name(self) -> str:
        """Slot name derived from the session's backend PID.

        Raises:
            NoConnectionError: If no session is open
        """
        if self.conn is None:
            raise NoConnectionError()
        return temp_slot_name(self.conn.backend_pid)

    # Transactions

    async def tx_begin(self) -> None:
        """Begin the snapshot transaction (REPEATABLE READ, READ ONLY).

        Starts a new cycle: the consistent point of the previous cycle is
        cleared, so only a slot created in this transaction can tag the
        export. Cancelling the calling task aborts an in-flight BEGIN.

        Raises:
            TransactionInProgressError: If a transaction is already open
            NoConnectionError: If no session is open
            ProtocolError: If BEGIN fails
        """
        if self.tx is not None:
            raise TransactionInProgressError()
        if self.conn is None:
            raise NoConnectionError("no postgresql connection")

        self.basebackup_lsn = ZERO_LSN

        try:
            tx = await self.conn.begin(isolation=ISOLATION_LEVEL, read_only=True)
        except SessionError as e:
            raise ProtocolError(f"could not begin tx: {e}") from e

        self.tx = tx

    async def tx_commit(self) -> None:
        """Commit the open transaction.

        Raises:
            NoTransactionError: If no transaction is open
            NoConnectionError: If no session is open
            ProtocolError: If COMMIT fails; the transaction stays owned
        """
        tx = self._require_tx()
        try:
            await tx.commit()
        except SessionError as e:
            raise ProtocolError(f"could not commit tx: {e}") from e
        self.tx = None

    async def tx_rollback(self) -> None:
        """Roll back the open transaction.

        Raises:
            NoTransactionError: If no transaction is open
            NoConnectionError: If no session is open
            ProtocolError: If ROLLBACK fails; the transaction stays owned
        """
        tx = self._require_tx()
        try:
            await tx.rollback()
        except SessionError as e:
            raise ProtocolError(f"could not rollback tx: {e}") from e
        self.tx = None

    def _require_tx(self) -> SessionTransaction:
        if self.tx is None:
            raise NoTransactionError()
        if self.conn is None:
            raise NoConnectionError()
        return self.tx

    async def lock_table(self) -> None:
        """Take an ACCESS SHARE lock on the table for the transaction.

        Raises:
            NoTransactionError: If no transaction is open
            ProtocolError: If the lock cannot be taken
        """
        if self.tx is None:
            raise NoTransactionError()

        query = f"LOCK TABLE {self.identifier.sanitize()} IN ACCESS SHARE MODE"
        try:
            await self.tx.execute(query)
        except SessionError as e:
            raise ProtocolError(f"could not lock the table: {e}") from e

    # Consistent point

    async def create_temp_replication_slot(self) -> ReplicationSlot:
        """Create a temporary slot bound to the transaction's snapshot.

        On success basebackup_lsn holds the slot's consistent point.

        Raises:
            NoTransactionError: If no transaction is open
            ProtocolError: If the command fails or returns an unexpected row
            NullConsistentPointError: If the consistent point is null
            LSNParseError: If the consistent point is malformed
        """
        if self.tx is None:
            raise NoTransactionError()

        query = (
            f"CREATE_REPLICATION_SLOT {self.temp_slot_name()} "
            f"TEMPORARY LOGICAL {self.plugin} USE_SNAPSHOT"
        )
        try:
            row = await self.tx.query_row(query)
        except SessionError as e:
            raise ProtocolError(f"could not create replication slot: {e}") from e

        if row is None or len(row) != 4:
            raise ProtocolError(f"could not scan: unexpected slot result {row!r}")

        created_slot_name, consistent_point, snapshot_name, plugin = row
        if consistent_point is None:
            raise NullConsistentPointError()

        try:
            lsn = LSN.parse(str(consistent_point))
        except LSNParseError as e:
            raise LSNParseError(f"could not parse LSN: {e}") from e

        self.basebackup_lsn = lsn

        slot = ReplicationSlot(
            name=str(created_slot_name),
            lsn=lsn,
            snapshot_name=snapshot_name,
            plugin=str(plugin),
        )
        logger.info(
            "Created temporary replication slot",
            extra={"slot_name": slot.name, "lsn": str(lsn), "snapshot_name": snapshot_name},
        )
        return slot

    # Export

    async def copy_dump(self) -> DumpStats:
        """Stream the table into the base backup file atomically.

        The table is copied into ``<path>.new`` which replaces ``<path>`` only
        once the copy is complete and synced. If the copy fails the
        transaction is rolled back and the temporary file removed. If the
        task is cancelled mid-stream only the temporary file is removed;
        the transaction is left to the caller.

        Raises:
            NoTransactionError: If no transaction is open
            NoConsistentPointError: If no consistent point was established
            CopyDumpError: If streaming fails (carries any rollback failure)
            BackupFileError: If the file cannot be opened or renamed
        """
        if self.tx is None:
            raise NoTransactionError()
        if not self.basebackup_lsn:
            raise NoConsistentPointError()

        temp_path = self.temp_path
        try:
            temp_path.unlink(missing_ok=True)
            fp = open(temp_path, "xb")
        except OSError as e:
            raise BackupFileError(f"could not open file: {e}") from e

        query = f"copy {self.identifier.sanitize()} to stdout"
        copy_error: Exception | None = None
        with fp:
            writer = _HashingWriter(fp)
            try:
                await self.tx.copy_to(query, writer)
                fp.flush()
                os.fsync(fp.fileno())
            except (SessionError, OSError) as e:
                copy_error = e
            except BaseException:
                fp.close()
                self._remove_temp_file(temp_path)
                raise

        if copy_error is not None:
            rollback_error: TableBackupError | None = None
            try:
                await self.tx_rollback()
            except TableBackupError as e:
                rollback_error = e
            self._remove_temp_file(temp_path)
            raise CopyDumpError(copy_error, rollback_error) from copy_error

        try:
            os.replace(temp_path, self.basebackup_path)
        except OSError as e:
            raise BackupFileError(f"could not move file: {e}") from e

        logger.debug(
            "Table copied",
            extra={"path": str(self.basebackup_path), "size_bytes": writer.size},
        )
        return DumpStats(size_bytes=writer.size, checksum=writer.checksum)

    def _remove_temp_file(self, temp_path: Path) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove temporary file {temp_path}: {e}")

    # Retention

    def rotate_old_deltas(self, deltas_dir: str | os.PathLike[str], last_lsn: LSN) -> list[Path]:
        """Remove delta files older than the current base backup.

        Args:
            deltas_dir: Directory holding delta files
            last_lsn: Start LSN of the delta file currently being written

        Returns:
            Paths removed

        Raises:
            NoConsistentPointError: If no consistent point was established
            DeltaFilenameError: If an entry does not follow the naming convention
            BackupFileError: If listing or removing fails
        """
        if not self.basebackup_lsn:
            raise NoConsistentPointError()
        return rotate_old_deltas(deltas_dir, last_lsn, self.basebackup_lsn)

    # Cycle

    async def run_basebackup(self) -> BaseBackupResult:
        """Run one complete backup cycle.

        Returns:
            BaseBackupResult describing the new base backup

        Raises:
            TableBackupError: From whichever step failed; the session is
                closed in every case
        """
        start_time = time.time()
        logger.info("Starting base backup", extra={"table": str(self.identifier)})

        await self.connect()
        try:
            await self.tx_begin()
            await self.lock_table()
            slot = await self.create_temp_replication_slot()
            stats = await self.copy_dump()
            await self.tx_commit()
        except BaseException:
            await self._abort_cycle()
            raise
        await self.disconnect()

        manifest_path = None
        if self.write_manifest:
            manifest_path = manifest_mod.write_manifest(
                self.basebackup_path,
                manifest_mod.BaseBackupManifest(
                    table=str(self.identifier),
                    lsn=slot.lsn,
                    slot_name=slot.name,
                    snapshot_name=slot.snapshot_name,
                    plugin=slot.plugin,
                    size_bytes=stats.size_bytes,
                    checksum=stats.checksum,
                    created_at=int(start_time * 1000),
                ),
            )

        result = BaseBackupResult(
            table=str(self.identifier),
            lsn=slot.lsn,
            slot=slot,
            path=self.basebackup_path,
            size_bytes=stats.size_bytes,
            checksum=stats.checksum,
            duration_ms=int((time.time() - start_time) * 1000),
            manifest_path=manifest_path,
        )
        logger.info(
            "Base backup completed",
            extra={
                "table": result.table,
                "lsn": str(result.lsn),
                "size_bytes": result.size_bytes,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    async def _abort_cycle(self) -> None:
        """Release the transaction and session after a failed step."""
        if self.tx is not None and self.conn is not None:
            try:
                await self.tx_rollback()
            except TableBackupError as e:
                logger.warning(f"Could not roll back after failed base backup: {e}")
        if self.conn is not None:
            try:
                await self.disconnect()
            except TableBackupError as e:
                logger.warning(f"Could not disconnect after failed base backup: {e}")

    @staticmethod
    async def _close_quietly(session: ReplicationSession) -> None:
        try:
            await session.close()
        except SessionError as e:
            logger.warning(f"Could not close session: {e}")
